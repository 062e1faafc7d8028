"""Persistence of finished dream sequences."""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Dict

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from dreambook.db_models import (
    SCENES_COLLECTION,
    SEQUENCES_COLLECTION,
    scene_to_document,
    sequence_from_documents,
    sequence_to_document,
)
from dreambook.models import SequenceResult

logger = logging.getLogger(__name__)


class SequenceStore(ABC):
    """Synchronous persistence collaborator for sequence records."""

    @abstractmethod
    def save_sequence(self, result: SequenceResult) -> str:
        """Persist ``result`` and return its identifier."""

    @abstractmethod
    def load(self, sequence_id: str) -> SequenceResult | None:
        """Return the stored sequence or None when it does not exist."""

    @abstractmethod
    def delete(self, sequence_id: str) -> bool:
        """Remove a stored sequence; returns False when there was nothing to remove."""


class InMemorySequenceStore(SequenceStore):
    """Process-local store used by the CLI and tests."""

    def __init__(self) -> None:
        self._records: Dict[str, SequenceResult] = {}
        self._lock = threading.Lock()

    def save_sequence(self, result: SequenceResult) -> str:
        sequence_id = result.id or uuid.uuid4().hex
        with self._lock:
            self._records[sequence_id] = result.model_copy(update={"id": sequence_id}, deep=True)
        return sequence_id

    def load(self, sequence_id: str) -> SequenceResult | None:
        with self._lock:
            record = self._records.get(sequence_id)
        return record.model_copy(deep=True) if record is not None else None

    def delete(self, sequence_id: str) -> bool:
        with self._lock:
            return self._records.pop(sequence_id, None) is not None


class MongoSequenceStore(SequenceStore):
    """Stores the sequence header and one document per scene.

    Scenes are written first and the header last, so a sequence only becomes
    visible to ``load`` once every document is in place.
    """

    def __init__(self, sequences: Collection | None = None, scenes: Collection | None = None) -> None:
        if sequences is None or scenes is None:
            from dreambook.db_config import get_mongo_database

            db = get_mongo_database()
            sequences = sequences if sequences is not None else db[SEQUENCES_COLLECTION]
            scenes = scenes if scenes is not None else db[SCENES_COLLECTION]
        self.sequences = sequences
        self.scenes = scenes

    def save_sequence(self, result: SequenceResult) -> str:
        object_id = ObjectId()
        sequence_id = str(object_id)
        header = sequence_to_document(result)
        header["_id"] = object_id

        try:
            # Upsert per scene so a retried write never duplicates earlier scenes
            for scene in result.scenes:
                self.scenes.replace_one(
                    {"sequence_id": sequence_id, "sequence_number": scene.sequence_number},
                    scene_to_document(sequence_id, scene),
                    upsert=True,
                )
            self.sequences.insert_one(header)
        except Exception:
            logger.error("Saving sequence %s failed; removing its partial documents", sequence_id)
            self._remove_documents(object_id, sequence_id)
            raise

        logger.info("Saved sequence %s with %d scenes", sequence_id, len(result.scenes))
        return sequence_id

    def load(self, sequence_id: str) -> SequenceResult | None:
        object_id = _object_id(sequence_id)
        if object_id is None:
            return None

        document = self.sequences.find_one({"_id": object_id})
        if document is None:
            return None

        scenes = list(self.scenes.find({"sequence_id": sequence_id}))
        return sequence_from_documents(document, scenes)

    def delete(self, sequence_id: str) -> bool:
        object_id = _object_id(sequence_id)
        if object_id is None:
            return False
        deleted = self.sequences.delete_one({"_id": object_id}).deleted_count
        self.scenes.delete_many({"sequence_id": sequence_id})
        logger.info("Deleted sequence %s", sequence_id)
        return bool(deleted)

    def _remove_documents(self, object_id: ObjectId, sequence_id: str) -> None:
        try:
            self.sequences.delete_one({"_id": object_id})
            self.scenes.delete_many({"sequence_id": sequence_id})
        except PyMongoError as e:
            logger.error("Could not remove partial documents of sequence %s: %s", sequence_id, e)


def _object_id(sequence_id: str) -> ObjectId | None:
    try:
        return ObjectId(sequence_id)
    except (InvalidId, TypeError):
        return None
