import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        backend: str,
        flat_store_path: str,
        storage_namespace: str,
        session_secret: str,
        session_ttl_hours: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.backend = backend
        self.flat_store_path = flat_store_path
        self.storage_namespace = storage_namespace
        self.session_secret = session_secret
        self.session_ttl_hours = session_ttl_hours
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    backend = os.getenv("BUDGET_BACKEND", "relational").strip().lower()
    flat_store_path = os.getenv(
        "BUDGET_FLAT_STORE_PATH", str(data_dir / "budget_store.json")
    )
    storage_namespace = os.getenv("BUDGET_STORAGE_NAMESPACE", "lb_budget_data")
    session_secret = os.getenv(
        "BUDGET_SESSION_SECRET",
        "5d0c2f4ab8e1b7a9e3f6c1d2a4b8e7f90c3d5a6b7e8f9a0b1c2d3e4f5a6b7c8d",
    )
    session_ttl_hours = int(os.getenv("BUDGET_SESSION_TTL_HOURS", "24"))
    log_level = os.getenv("BUDGET_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        backend=backend,
        flat_store_path=flat_store_path,
        storage_namespace=storage_namespace,
        session_secret=session_secret,
        session_ttl_hours=session_ttl_hours,
        log_level=log_level,
    )
