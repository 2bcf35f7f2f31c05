"""
Tests for key storage and the model repository.

Tests cover:
- Owner-only key files
- Key id validation
- Snapshot versioning and session records
"""

import os
import stat

import pytest
import torch

from fedhealth.shared.database import ModelRepository, create_database_manager
from fedhealth.shared.models import ModelType
from fedhealth.shared.storage import FileKeyStorage, InMemoryKeyStorage


@pytest.fixture
def repository(tmp_path):
    return ModelRepository(create_database_manager(f"sqlite:///{tmp_path / 'models.db'}"))


class TestFileKeyStorage:
    """Key material on disk."""

    def test_store_and_load(self, tmp_path):
        storage = FileKeyStorage(str(tmp_path / "keys"))

        storage.store("s1.coordinator", b"secret")

        assert storage.load("s1.coordinator") == b"secret"
        assert storage.load("s1.p1") is None

    def test_files_are_owner_only(self, tmp_path):
        storage = FileKeyStorage(str(tmp_path / "keys"))
        storage.store("s1.coordinator", b"secret")

        mode = stat.S_IMODE(os.stat(tmp_path / "keys" / "s1.coordinator.key").st_mode)
        assert mode == 0o600
        assert stat.S_IMODE(os.stat(tmp_path / "keys").st_mode) == 0o700

    def test_overwrite(self, tmp_path):
        storage = FileKeyStorage(str(tmp_path / "keys"))
        storage.store("k", b"one")
        storage.store("k", b"two")

        assert storage.load("k") == b"two"
        assert [p.name for p in (tmp_path / "keys").iterdir()] == ["k.key"]

    @pytest.mark.parametrize("key_id", ["", "..", "../escape", "a/b", "with space"])
    def test_unsafe_ids_rejected(self, tmp_path, key_id):
        with pytest.raises(ValueError):
            FileKeyStorage(str(tmp_path)).store(key_id, b"x")

    def test_delete(self, tmp_path):
        storage = FileKeyStorage(str(tmp_path))
        storage.store("k", b"x")

        assert storage.delete("k")
        assert not storage.delete("k")
        assert storage.load("k") is None


class TestInMemoryKeyStorage:

    def test_store_load_delete(self):
        storage = InMemoryKeyStorage()
        storage.store("k", bytearray(b"x"))

        assert storage.load("k") == b"x"
        assert storage.delete("k")
        assert storage.load("k") is None


class TestModelRepository:
    """Snapshots and session records."""

    def test_empty_store(self, repository):
        assert repository.load_latest(ModelType.SLEEP_QUALITY) is None
        assert repository.latest_version(ModelType.SLEEP_QUALITY) is None
        assert repository.db_manager.test_connection()

    def test_latest_uses_numeric_version_order(self, repository):
        repository.store_snapshot(ModelType.SLEEP_QUALITY, "1.0.10", [torch.ones(2)])
        repository.store_snapshot(ModelType.SLEEP_QUALITY, "1.0.9", [torch.zeros(2)])

        version, weights = repository.load_latest(ModelType.SLEEP_QUALITY)

        assert version == "1.0.10"
        assert torch.equal(weights[0], torch.ones(2))

    def test_model_types_are_separate(self, repository):
        repository.store_snapshot(ModelType.SLEEP_QUALITY, "1.0.3", [torch.ones(2)])

        assert repository.latest_version(ModelType.STRESS_DETECTION) is None
        assert len(repository.list_snapshots(ModelType.SLEEP_QUALITY)) == 1

    def test_invalid_version_rejected(self, repository):
        with pytest.raises(ValueError):
            repository.store_snapshot(ModelType.SLEEP_QUALITY, "latest", [torch.ones(2)])

    def test_session_record_upsert(self, repository, session):
        repository.record_session(session.to_dict())
        session.last_error = "boom"
        data = session.to_dict()
        data['status'] = "failed"
        repository.record_session(data)

        record = repository.get_session_record("s1")

        assert record['status'] == "failed"
        assert record['last_error'] == "boom"
        assert repository.get_session_record("missing") is None
