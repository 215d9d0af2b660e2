import os
from psycopg.rows import dict_row
from contextlib import contextmanager

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

DATABASE_URL = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/pharmacy"

def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default

# Pool sizing defaults are conservative for local/dev. Override in prod via env:
# - DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE
_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 10)

# Opened lazily so importing the app (tests, workers) does not connect.
_pool = ConnectionPool(
    conninfo=DATABASE_URL,
    min_size=_POOL_MIN,
    max_size=_POOL_MAX,
    kwargs={"row_factory": dict_row},
    open=False,
)
_pool_opened = False


def _ensure_open(pool: ConnectionPool) -> None:
    global _pool_opened
    if not _pool_opened:
        pool.open()
        _pool_opened = True


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # Preserve the semantics of `with get_conn() as conn:`:
    # - commit on success
    # - rollback on exception
    # - return connection to pool
    _ensure_open(pool)
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_pool)


def listen_conninfo() -> str:
    # LISTEN needs a dedicated long-lived connection, never a pooled one.
    return DATABASE_URL


def close_pools() -> None:
    # Best-effort shutdown hook (e.g. uvicorn shutdown).
    if not _pool_opened:
        return
    try:
        _pool.close()
    except Exception:
        pass
