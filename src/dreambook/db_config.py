"""MongoDB configuration for styles, global rules and sequence records."""

from __future__ import annotations

import logging
import os
import time

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError, ServerSelectionTimeoutError

from dreambook.db_models import (
    GLOBAL_PROMPT_RULES_COLLECTION,
    SCENES_COLLECTION,
    SEQUENCES_COLLECTION,
    STYLES_COLLECTION,
)


logger = logging.getLogger(__name__)

DEFAULT_MONGO_URL = "mongodb://localhost:27017"
DEFAULT_DB_NAME = "dreambook"

_mongo_client: MongoClient | None = None


def _mongo_url() -> str:
    return os.getenv("MONGODB_URI") or os.getenv("MONGO_URL", DEFAULT_MONGO_URL)


def _mongo_db_name() -> str:
    return os.getenv("MONGO_DB_NAME", DEFAULT_DB_NAME)


def use_mock() -> bool:
    return os.getenv("MONGO_USE_MOCK", "false").lower() in {"1", "true", "yes"}


def _build_mock_client() -> MongoClient:
    import mongomock

    return mongomock.MongoClient()


def _initialise_mongo_client() -> MongoClient:
    global _mongo_client

    if _mongo_client is not None:
        return _mongo_client

    if use_mock():
        _mongo_client = _build_mock_client()
        return _mongo_client

    mongo_url = _mongo_url()
    max_retries = 3
    retry_count = 0

    while True:
        try:
            client = MongoClient(
                mongo_url,
                appname="dreambook",
                serverSelectionTimeoutMS=10000,
                connectTimeoutMS=10000,
            )
            # Test connection
            client.admin.command("ping")
            _mongo_client = client
            return _mongo_client

        except ServerSelectionTimeoutError as e:
            retry_count += 1
            if retry_count >= max_retries:
                raise RuntimeError(
                    f"Failed to connect to MongoDB after {max_retries} attempts: {e}"
                ) from e
            # Exponential backoff: 1s, 2s
            time.sleep(2 ** (retry_count - 1))


def get_mongo_client() -> MongoClient:
    return _initialise_mongo_client()


def get_mongo_database() -> Database:
    return get_mongo_client()[_mongo_db_name()]


def get_mongo_collection(name: str) -> Collection:
    return get_mongo_database()[name]


def ensure_indexes(db: Database) -> None:
    """Create the indexes the dreambook collections rely on."""
    db[STYLES_COLLECTION].create_index("key", unique=True)
    db[STYLES_COLLECTION].create_index([("is_active", ASCENDING), ("order", ASCENDING)])

    db[GLOBAL_PROMPT_RULES_COLLECTION].create_index(
        [("is_active", ASCENDING), ("updated_at", DESCENDING)]
    )

    db[SEQUENCES_COLLECTION].create_index("created_at")

    db[SCENES_COLLECTION].create_index(
        [("sequence_id", ASCENDING), ("sequence_number", ASCENDING)], unique=True
    )


def create_indexes() -> bool:
    """Ensure indexes exist, logging instead of raising when Mongo is unreachable."""
    try:
        ensure_indexes(get_mongo_database())
        return True
    except (PyMongoError, RuntimeError) as e:
        logger.error(
            "Failed to create database indexes: %s. "
            "Set MONGO_USE_MOCK=true to use an in-memory MongoDB emulation.",
            e,
        )
        return False


def close_mongo_client() -> None:
    global _mongo_client
    if _mongo_client is not None:
        _mongo_client.close()
        _mongo_client = None
