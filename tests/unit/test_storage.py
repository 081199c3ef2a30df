"""Tests for blob stores and emission point local storage."""

import pytest

from corrispettivi_engine.pem.storage import FileStorage, MemoryStorage
from corrispettivi_engine.storage.blob import (
    FileSystemBlobStore,
    MemoryBlobStore,
    create_blob_store,
)


@pytest.fixture(params=["memory", "filesystem"])
def blob_store(request, tmp_path):
    if request.param == "memory":
        return MemoryBlobStore()
    return FileSystemBlobStore(tmp_path / "blobs")


class TestBlobStore:
    async def test_store_and_retrieve(self, blob_store):
        await blob_store.store("journals/PEM-1/2025-01-15/a.json", b"{}")
        assert await blob_store.retrieve("journals/PEM-1/2025-01-15/a.json") == b"{}"
        assert await blob_store.exists("journals/PEM-1/2025-01-15/a.json") is True

    async def test_missing_key(self, blob_store):
        assert await blob_store.retrieve("nope.json") is None
        assert await blob_store.exists("nope.json") is False
        assert await blob_store.delete("nope.json") is False

    async def test_overwrite(self, blob_store):
        await blob_store.store("k.json", b"1")
        await blob_store.store("k.json", b"2")
        assert await blob_store.retrieve("k.json") == b"2"

    async def test_delete(self, blob_store):
        await blob_store.store("k.json", b"1")
        assert await blob_store.delete("k.json") is True
        assert await blob_store.exists("k.json") is False

    async def test_list_by_prefix(self, blob_store):
        await blob_store.store("audit/journal/j1/a.xml", b"a")
        await blob_store.store("audit/journal/j1/b.xml", b"b")
        await blob_store.store("audit/document/j2/c.xml", b"c")
        assert await blob_store.list("audit/journal/") == [
            "audit/journal/j1/a.xml", "audit/journal/j1/b.xml",
        ]
        assert len(await blob_store.list()) == 3

    async def test_delete_prefix(self, blob_store):
        await blob_store.store("audit/journal/j1/a.xml", b"a")
        await blob_store.store("audit/journal/j1/b.xml", b"b")
        await blob_store.store("audit/journal/j2/c.xml", b"c")
        assert await blob_store.delete_prefix("audit/journal/j1/") == 2
        assert await blob_store.list() == ["audit/journal/j2/c.xml"]

    @pytest.mark.parametrize("key", ["", "/abs.json", "../escape.json", "a/../../b"])
    async def test_invalid_keys_rejected(self, blob_store, key):
        with pytest.raises(ValueError):
            await blob_store.store(key, b"x")


def test_create_blob_store(tmp_path):
    assert isinstance(create_blob_store("memory", ""), MemoryBlobStore)
    assert isinstance(create_blob_store("filesystem", str(tmp_path)), FileSystemBlobStore)
    with pytest.raises(ValueError):
        create_blob_store("s3", "")


@pytest.fixture(params=["memory", "file"])
def pem_storage(request, tmp_path):
    if request.param == "memory":
        return MemoryStorage()
    return FileStorage(tmp_path / "pem")


class TestEmissionPointStorage:
    def test_receipts(self, pem_storage):
        pem_storage.save_receipt("2025-01-15-000002", {"n": 2})
        pem_storage.save_receipt("2025-01-15-000001", {"n": 1})
        assert pem_storage.get_receipt("2025-01-15-000001") == {"n": 1}
        assert pem_storage.get_receipt("2025-01-15-000009") is None
        assert pem_storage.list_receipts() == [{"n": 1}, {"n": 2}]

    def test_journals(self, pem_storage):
        pem_storage.save_journal("2025-01-15", {"entries": []})
        assert pem_storage.get_journal("2025-01-15") == {"entries": []}
        assert pem_storage.get_journal("2025-01-16") is None

    def test_metadata(self, pem_storage):
        pem_storage.save_metadata("last_number", 7)
        assert pem_storage.get_metadata("last_number") == 7
        assert pem_storage.get_metadata("missing") is None

    def test_clear(self, pem_storage):
        pem_storage.save_receipt("r", {"n": 1})
        pem_storage.save_journal("2025-01-15", {})
        pem_storage.save_metadata("k", "v")
        pem_storage.clear()
        assert pem_storage.list_receipts() == []
        assert pem_storage.get_journal("2025-01-15") is None
        assert pem_storage.get_metadata("k") is None
