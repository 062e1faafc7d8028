"""Unit tests for MongoDB configuration."""

from unittest.mock import MagicMock, patch

import mongomock
import pytest
from pymongo.errors import ServerSelectionTimeoutError

from dreambook import db_config


@pytest.fixture(autouse=True)
def reset_client():
    db_config.close_mongo_client()
    yield
    db_config.close_mongo_client()


class TestMongoConfig:
    """Test client initialisation."""

    def test_mock_client_when_requested(self, monkeypatch):
        monkeypatch.setenv("MONGO_USE_MOCK", "true")

        client = db_config.get_mongo_client()

        assert isinstance(client, mongomock.MongoClient)
        assert db_config.get_mongo_client() is client

    def test_database_name_from_environment(self, monkeypatch):
        monkeypatch.setenv("MONGO_USE_MOCK", "true")
        monkeypatch.setenv("MONGO_DB_NAME", "dreams_test")

        assert db_config.get_mongo_database().name == "dreams_test"

    def test_connection_failure_raises_after_retries(self, monkeypatch):
        monkeypatch.setenv("MONGO_USE_MOCK", "false")
        mock_client = MagicMock()
        mock_client.admin.command.side_effect = ServerSelectionTimeoutError("no servers")

        with patch("dreambook.db_config.MongoClient", return_value=mock_client), \
                patch("dreambook.db_config.time.sleep") as mock_sleep:
            with pytest.raises(RuntimeError, match="after 3 attempts"):
                db_config.get_mongo_client()

        assert mock_sleep.call_count == 2

    def test_create_indexes(self, monkeypatch):
        monkeypatch.setenv("MONGO_USE_MOCK", "true")

        assert db_config.create_indexes() is True
        indexes = db_config.get_mongo_collection("dreambook_styles").index_information()
        assert any(info["key"] == [("key", 1)] for info in indexes.values())

    def test_create_indexes_reports_failure(self, monkeypatch):
        with patch("dreambook.db_config.get_mongo_database", side_effect=RuntimeError("down")):
            assert db_config.create_indexes() is False
