"""Tests for the FAISS-backed store and the store factory."""

import os
from unittest.mock import MagicMock

import faiss
import numpy as np
import pytest

from frame_loader.config import StoreConfig
from frame_loader.embedding import IndexRecord
from frame_loader.errors import StoreError
from frame_loader.store import CollectionSchema, FaissStore, IndexSpec, open_store

DIM = 8


def unit(i, dim=DIM):
    v = np.zeros(dim, dtype=np.float32)
    v[i % dim] = 1.0
    return v


def records(n, prefix="1/a.mp4", offset=0):
    return [IndexRecord(id=f"{prefix}/{i + offset:.2f}", vector=unit(i + offset), primary_key=i + offset) for i in range(n)]


@pytest.fixture
def store(tmp_path):
    s = FaissStore(str(tmp_path))
    s.create_collection(CollectionSchema(name="frames", dim=DIM))
    return s


class TestCollectionLifecycle:
    def test_create_writes_schema(self, store, tmp_path):
        assert store.load_schema("frames") == CollectionSchema(name="frames", dim=DIM)
        assert os.path.isdir(tmp_path / "frames" / "segments")

    def test_recreate_drops_existing_data(self, store, tmp_path):
        store.insert("frames", records(3))
        store.flush("frames")
        store.create_collection(CollectionSchema(name="frames", dim=DIM))
        assert os.listdir(tmp_path / "frames" / "segments") == []

    def test_release_discards_unflushed_rows(self, store, tmp_path):
        store.insert("frames", records(3))
        store.release_collection("frames")
        store.flush("frames")
        assert os.listdir(tmp_path / "frames" / "segments") == []

    def test_unknown_collection(self, tmp_path):
        with pytest.raises(StoreError):
            FaissStore(str(tmp_path)).insert("missing", records(1))


class TestInsertFlushIndex:
    def test_flush_writes_one_segment(self, store, tmp_path):
        store.insert("frames", records(2))
        store.insert("frames", records(2, offset=2))
        store.flush("frames")
        assert len(os.listdir(tmp_path / "frames" / "segments")) == 1

    def test_flush_without_rows_is_noop(self, store, tmp_path):
        store.flush("frames")
        assert os.listdir(tmp_path / "frames" / "segments") == []

    def test_wrong_dimension_rejected(self, store):
        bad = IndexRecord(id="x", vector=np.ones(DIM + 1, dtype=np.float32), primary_key=1)
        with pytest.raises(StoreError):
            store.insert("frames", [bad])

    def test_index_search_finds_inserted_vector(self, store):
        store.insert("frames", records(5))
        store.flush("frames")
        store.create_index("frames", IndexSpec(field_name="cl_ha", params={"nlist": 4}))

        index, metas = store.load_index("frames")
        scores, rows = index.search(unit(3).reshape(1, -1), 1)

        assert index.ntotal == 5
        assert metas[int(rows[0][0])]["id"] == "1/a.mp4/3.00"
        assert float(scores[0][0]) == pytest.approx(1.0)

    def test_reinserting_same_ids_does_not_duplicate(self, store):
        for _ in range(2):
            store.insert("frames", records(4))
            store.flush("frames")
        store.create_index("frames", IndexSpec(params={"nlist": 4}))

        index, metas = store.load_index("frames")

        assert index.ntotal == 4
        assert sorted(m["id"] for m in metas) == sorted(r.id for r in records(4))

    def test_ivf_index_when_enough_points(self, store):
        rng = np.random.default_rng(0)
        rows = [
            IndexRecord(id=f"1/a.mp4/{i}", vector=rng.random(DIM, dtype=np.float32), primary_key=i)
            for i in range(2 * 39 * 2)
        ]
        store.insert("frames", rows)
        store.flush("frames")
        store.create_index("frames", IndexSpec(params={"nlist": 2}))

        index, _ = store.load_index("frames")

        assert index.ntotal == len(rows)
        assert faiss.extract_index_ivf(index).nlist == 2

    def test_index_on_empty_collection_is_skipped(self, store):
        store.create_index("frames", IndexSpec())
        with pytest.raises(StoreError):
            store.load_index("frames")

    def test_unknown_vector_field(self, store):
        with pytest.raises(StoreError):
            store.create_index("frames", IndexSpec(field_name="nope"))


class TestOpenStore:
    def test_faiss_backend(self, tmp_path):
        s = open_store(StoreConfig(backend="faiss", faiss_dir=str(tmp_path)))
        assert isinstance(s, FaissStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            open_store(StoreConfig(backend="sqlite"))


class TestMilvusStore:
    @pytest.fixture
    def client(self, monkeypatch):
        pymilvus = pytest.importorskip("pymilvus")
        client_cls = MagicMock()
        monkeypatch.setattr(pymilvus, "MilvusClient", client_cls)
        return client_cls

    def test_release_only_existing_collection(self, client):
        from frame_loader.store import MilvusStore

        store = MilvusStore("http://milvus.test:19530")
        client.return_value.has_collection.return_value = False

        store.release_collection("frames")

        client.return_value.release_collection.assert_not_called()

    def test_recreate_drops_then_creates(self, client):
        from frame_loader.store import MilvusStore

        store = MilvusStore("http://milvus.test:19530")
        client.return_value.has_collection.return_value = True

        store.create_collection(CollectionSchema(name="frames", dim=DIM))

        client.return_value.drop_collection.assert_called_once_with("frames")
        assert client.return_value.create_collection.call_args.kwargs["collection_name"] == "frames"

    def test_insert_rows(self, client):
        from frame_loader.store import MilvusStore

        store = MilvusStore("http://milvus.test:19530", timeout=60.0)

        store.insert("frames", records(1))

        rows = client.return_value.insert.call_args.kwargs["data"]
        assert rows == [{"id": "1/a.mp4/0.00", "cl_ha": unit(0).tolist(), "primary_key": 0}]

    def test_errors_become_store_errors(self, client):
        from pymilvus import MilvusException

        from frame_loader.store import MilvusStore

        store = MilvusStore("http://milvus.test:19530")
        client.return_value.flush.side_effect = MilvusException(message="down")

        with pytest.raises(StoreError):
            store.flush("frames")
