"""Vector store adapters.

The load worker only needs five collection operations (release, create,
insert, flush, create index). ``MilvusStore`` talks to a Milvus server;
``FaissStore`` keeps a collection as a directory of flushed segments plus a
FAISS index rebuilt on demand, for single-node setups.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Sequence, Tuple

import faiss
import numpy as np

from .config import StoreConfig, store as store_cfg
from .embedding import IndexRecord
from .errors import StoreError

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectionSchema:
    name: str
    dim: int
    vector_field: str = "cl_ha"
    id_field: str = "id"
    primary_field: str = "primary_key"
    id_max_length: int = 500
    description: str = "Video frame hash vectors"

    @classmethod
    def from_config(cls, cfg: StoreConfig) -> "CollectionSchema":
        return cls(
            name=cfg.collection,
            dim=cfg.dim,
            vector_field=cfg.vector_field,
            id_field=cfg.id_field,
            primary_field=cfg.primary_field,
            id_max_length=cfg.id_max_length,
        )


@dataclass(frozen=True)
class IndexSpec:
    field_name: str = "cl_ha"
    index_type: str = "IVF_SQ8"
    metric_type: str = "IP"
    params: Dict[str, int] = field(default_factory=lambda: {"nlist": 128})

    @classmethod
    def from_config(cls, cfg: StoreConfig) -> "IndexSpec":
        return cls(
            field_name=cfg.vector_field,
            index_type=cfg.index_type,
            metric_type=cfg.metric_type,
            params={"nlist": cfg.nlist},
        )


class VectorStore(ABC):
    """Collection operations the load worker consumes."""

    @abstractmethod
    def release_collection(self, name: str) -> None: ...

    @abstractmethod
    def create_collection(self, schema: CollectionSchema) -> None: ...

    @abstractmethod
    def insert(self, name: str, records: Sequence[IndexRecord]) -> None: ...

    @abstractmethod
    def flush(self, name: str) -> None: ...

    @abstractmethod
    def create_index(self, name: str, spec: IndexSpec) -> None: ...

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# ---------------------------------------------------------------------------
# FAISS


class FaissStore(VectorStore):
    """Directory-backed collections with a FAISS index.

    Layout of ``<root>/<collection>/``::

        schema.json
        segments/<ns>-<uuid>.npz   one file per flush
        index.faiss                rebuilt by create_index
        index_meta.jsonl           id/primary_key per index row

    Segments get unique names, so concurrent job processes can flush into the
    same collection. Index rows are unique by identity field: when a frame is
    inserted again (job retry) the latest copy wins.
    """

    # IVF training wants ~39 points per centroid; below that use exact search.
    MIN_POINTS_PER_CENTROID = 39

    def __init__(self, root: str):
        self.root = root
        self._pending: Dict[str, List[IndexRecord]] = {}

    def _dir(self, name: str) -> str:
        return os.path.join(self.root, name)

    def _segments_dir(self, name: str) -> str:
        return os.path.join(self._dir(name), "segments")

    def load_schema(self, name: str) -> CollectionSchema:
        path = os.path.join(self._dir(name), "schema.json")
        if not os.path.exists(path):
            raise StoreError(f"collection {name!r} does not exist under {self.root}")
        with open(path, "r", encoding="utf-8") as f:
            return CollectionSchema(**json.load(f))

    def release_collection(self, name: str) -> None:
        self._pending.pop(name, None)

    def create_collection(self, schema: CollectionSchema) -> None:
        path = self._dir(schema.name)
        try:
            if os.path.isdir(path):
                shutil.rmtree(path)
            os.makedirs(self._segments_dir(schema.name), exist_ok=True)
            _write_atomic(
                os.path.join(path, "schema.json"),
                lambda f: f.write(json.dumps(asdict(schema), indent=2).encode("utf-8")),
            )
        except OSError as e:
            raise StoreError(f"cannot create collection {schema.name!r}: {e}") from e

    def insert(self, name: str, records: Sequence[IndexRecord]) -> None:
        schema = self.load_schema(name)
        for r in records:
            if len(r.vector) != schema.dim:
                raise StoreError(
                    f"vector dimension {len(r.vector)} does not match collection dim {schema.dim}"
                )
            if len(r.id) > schema.id_max_length:
                raise StoreError(f"id longer than {schema.id_max_length}: {r.id[:60]}...")
        self._pending.setdefault(name, []).extend(records)

    def flush(self, name: str) -> None:
        self.load_schema(name)
        pending = self._pending.pop(name, [])
        if not pending:
            return
        vectors = np.vstack([np.asarray(r.vector, dtype=np.float32) for r in pending])
        ids = np.array([r.id for r in pending], dtype=str)
        keys = np.array([r.primary_key for r in pending], dtype=np.int64)
        segment = os.path.join(self._segments_dir(name), f"{time.time_ns():020d}-{uuid.uuid4().hex}.npz")
        try:
            _write_atomic(segment, lambda f: np.savez(f, vectors=vectors, ids=ids, keys=keys))
        except OSError as e:
            self._pending[name] = pending + self._pending.get(name, [])
            raise StoreError(f"flush of {name!r} failed: {e}") from e
        LOG.debug("Flushed %d rows of %s to %s", len(pending), name, segment)

    def _read_segments(self, name: str) -> Tuple[np.ndarray, List[str], List[int]]:
        latest: Dict[str, Tuple[np.ndarray, int]] = {}
        seg_dir = self._segments_dir(name)
        for seg_name in sorted(os.listdir(seg_dir)):
            if not seg_name.endswith(".npz"):
                continue
            with np.load(os.path.join(seg_dir, seg_name)) as seg:
                for vec, rid, key in zip(seg["vectors"], seg["ids"], seg["keys"]):
                    latest[str(rid)] = (vec, int(key))
        ids = list(latest)
        keys = [latest[i][1] for i in ids]
        if not ids:
            return np.zeros((0, 0), dtype=np.float32), [], []
        vectors = np.vstack([latest[i][0] for i in ids]).astype(np.float32)
        return vectors, ids, keys

    def _build_index(self, xb: np.ndarray, spec: IndexSpec) -> faiss.Index:
        n, d = xb.shape
        metric = faiss.METRIC_INNER_PRODUCT if spec.metric_type.upper() == "IP" else faiss.METRIC_L2
        nlist = int(spec.params.get("nlist", 128))
        if n < nlist * self.MIN_POINTS_PER_CENTROID:
            LOG.info("Using exact search for %d vectors (IVF needs >= %d)", n, nlist * self.MIN_POINTS_PER_CENTROID)
            index = faiss.IndexFlatIP(d) if metric == faiss.METRIC_INNER_PRODUCT else faiss.IndexFlatL2(d)
        else:
            quantizer = "SQ8" if spec.index_type.upper() == "IVF_SQ8" else "Flat"
            index = faiss.index_factory(d, f"IVF{nlist},{quantizer}", metric)
            index.train(xb)
        index.add(xb)
        return index

    def create_index(self, name: str, spec: IndexSpec) -> None:
        schema = self.load_schema(name)
        if spec.field_name != schema.vector_field:
            raise StoreError(f"{name!r} has no vector field {spec.field_name!r}")
        try:
            xb, ids, keys = self._read_segments(name)
            if not ids:
                LOG.info("Collection %s is empty; no index built", name)
                return
            index = self._build_index(xb, spec)
            base = self._dir(name)
            _write_atomic(
                os.path.join(base, "index.faiss"),
                lambda f: f.write(faiss.serialize_index(index).tobytes()),
            )
            _write_atomic(
                os.path.join(base, "index_meta.jsonl"),
                lambda f: f.writelines(
                    (json.dumps({"id": i, "primary_key": k}, ensure_ascii=False) + "\n").encode("utf-8")
                    for i, k in zip(ids, keys)
                ),
            )
        except (OSError, RuntimeError, ValueError) as e:
            raise StoreError(f"index build of {name!r} failed: {e}") from e

    def load_index(self, name: str) -> Tuple[faiss.Index, List[dict]]:
        """Read back the index of ``name`` and its row metadata."""
        base = self._dir(name)
        index_path = os.path.join(base, "index.faiss")
        if not os.path.exists(index_path):
            raise StoreError(f"index of {name!r} not built yet")
        index = faiss.read_index(index_path)
        with open(os.path.join(base, "index_meta.jsonl"), "r", encoding="utf-8") as f:
            metas = [json.loads(line) for line in f if line.strip()]
        return index, metas


def _write_atomic(path: str, write) -> None:
    tmp = f"{path}.{uuid.uuid4().hex}.tmp"
    with open(tmp, "wb") as f:
        write(f)
    os.replace(tmp, path)


# ---------------------------------------------------------------------------
# Milvus


class MilvusStore(VectorStore):
    """pymilvus ``MilvusClient`` adapter (install the ``milvus`` extra)."""

    def __init__(
        self,
        uri: str,
        token: str = "",
        timeout: float | None = None,
        fields: Tuple[str, str, str] = ("id", "cl_ha", "primary_key"),
    ):
        from pymilvus import MilvusClient, MilvusException

        self._exc = MilvusException
        self.timeout = timeout
        self.id_field, self.vector_field, self.primary_field = fields
        try:
            self.client = MilvusClient(uri=uri, token=token, timeout=timeout)
        except MilvusException as e:
            raise StoreError(f"cannot connect to Milvus at {uri}: {e}") from e

    def _call(self, what: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except self._exc as e:
            raise StoreError(f"Milvus {what} failed: {e}") from e

    def release_collection(self, name: str) -> None:
        if self._call("has_collection", self.client.has_collection, name):
            self._call("release_collection", self.client.release_collection, name)

    def create_collection(self, schema: CollectionSchema) -> None:
        from pymilvus import DataType, MilvusClient

        if self._call("has_collection", self.client.has_collection, schema.name):
            self._call("drop_collection", self.client.drop_collection, schema.name)
        s = MilvusClient.create_schema(auto_id=False, description=schema.description)
        s.add_field(schema.vector_field, DataType.FLOAT_VECTOR, dim=schema.dim)
        s.add_field(schema.id_field, DataType.VARCHAR, max_length=schema.id_max_length)
        s.add_field(schema.primary_field, DataType.INT64, is_primary=True)
        self._call("create_collection", self.client.create_collection, collection_name=schema.name, schema=s)

    def insert(self, name: str, records: Sequence[IndexRecord]) -> None:
        rows = [
            {
                self.id_field: r.id,
                self.vector_field: np.asarray(r.vector, dtype=np.float32).tolist(),
                self.primary_field: r.primary_key,
            }
            for r in records
        ]
        self._call("insert", self.client.insert, collection_name=name, data=rows, timeout=self.timeout)

    def flush(self, name: str) -> None:
        self._call("flush", self.client.flush, collection_name=name, timeout=self.timeout)

    def create_index(self, name: str, spec: IndexSpec) -> None:
        params = self.client.prepare_index_params()
        params.add_index(
            field_name=spec.field_name,
            index_type=spec.index_type,
            metric_type=spec.metric_type,
            params=dict(spec.params),
        )
        self._call("create_index", self.client.create_index, collection_name=name, index_params=params)

    def close(self) -> None:
        self.client.close()


StoreFactory = Callable[[StoreConfig], VectorStore]


def open_store(cfg: StoreConfig = store_cfg) -> VectorStore:
    """Open a fresh store connection; each job attempt uses its own."""
    if cfg.backend == "faiss":
        return FaissStore(cfg.faiss_dir)
    if cfg.backend == "milvus":
        return MilvusStore(
            cfg.milvus_url,
            token=cfg.milvus_token,
            timeout=cfg.timeout,
            fields=(cfg.id_field, cfg.vector_field, cfg.primary_field),
        )
    raise ValueError(f"Unknown VECTOR_STORE backend: {cfg.backend!r}")
