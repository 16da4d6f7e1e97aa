import logging
import os
import sys
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


@dataclass(frozen=True)
class ApiConfig:
    api_url: str = os.environ.get("TRACE_API_URL", "http://127.0.0.1:3311").rstrip("/")
    # Hash artifacts and load notifications live on the API host unless split out.
    media_url: str = os.environ.get(
        "TRACE_MEDIA_URL", os.environ.get("TRACE_API_URL", "http://127.0.0.1:3311")
    ).rstrip("/")
    secret: str = os.environ.get("TRACE_API_SECRET", "")
    worker_type: str = os.environ.get("TRACE_WORKER_TYPE", "load")
    secret_header: str = "x-trace-secret"
    worker_type_header: str = "x-trace-worker-type"
    request_timeout: float = _env_float("REQUEST_TIMEOUT", 60.0)
    reconnect_seconds: float = _env_float("RECONNECT_SECONDS", 5.0)

    @property
    def channel_url(self) -> str:
        """WebSocket endpoint of the job dispatcher (http -> ws, https -> wss)."""
        if self.api_url.startswith("http"):
            return "ws" + self.api_url[len("http"):] + "/ws"
        return self.api_url + "/ws"


@dataclass(frozen=True)
class StoreConfig:
    backend: str = os.environ.get("VECTOR_STORE", "milvus")  # milvus|faiss
    milvus_url: str = os.environ.get("MILVUS_URL", "http://127.0.0.1:19530")
    milvus_token: str = os.environ.get("MILVUS_TOKEN", "")
    faiss_dir: str = os.environ.get("FAISS_STORE_DIR", os.path.join(BASE_DIR, "data", "store"))
    collection: str = os.environ.get("COLLECTION_NAME", "shotit")
    dim: int = _env_int("VECTOR_DIM", 100)
    vector_field: str = "cl_ha"
    id_field: str = "id"
    primary_field: str = "primary_key"
    id_max_length: int = 500
    index_type: str = "IVF_SQ8"
    metric_type: str = "IP"
    nlist: int = _env_int("INDEX_NLIST", 128)
    timeout: float = _env_float("STORE_TIMEOUT", 60.0)


@dataclass(frozen=True)
class LoadConfig:
    batch_size: int = _env_int("LOAD_BATCH_SIZE", 10_000)
    pace_seconds: float = _env_float("LOAD_PACE_SECONDS", 1.0)
    retry_seconds: float = _env_float("LOAD_RETRY_SECONDS", 30.0)
    dedup_window: int = _env_int("DEDUP_WINDOW", 24)
    dedup_min_gap: float = _env_float("DEDUP_MIN_GAP", 2.0)
    normalize_workers: int = _env_int("NORMALIZE_WORKERS", 1)
    show_progress: bool = os.environ.get("LOAD_PROGRESS", "0") == "1"


@dataclass(frozen=True)
class MaintenanceConfig:
    enabled: bool = os.environ.get("MAINTENANCE_ENABLED", "1") == "1"
    at: str = os.environ.get("MAINTENANCE_AT", "03:00")  # local HH:MM, daily


@dataclass(frozen=True)
class WorkerSettings:
    """Everything a job unit needs; crosses the process boundary by pickling."""

    api: ApiConfig = field(default_factory=ApiConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    load: LoadConfig = field(default_factory=LoadConfig)
    log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()


api = ApiConfig()
store = StoreConfig()
loader = LoadConfig()
maintenance = MaintenanceConfig()


def setup_logging(level: str | None = None) -> None:
    """Configure root logging for this process (worker, CLI or job unit)."""
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(processName)s] %(name)s: %(message)s",
        stream=sys.stdout,
        force=True,
    )
    for noisy in ("urllib3", "websocket"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
