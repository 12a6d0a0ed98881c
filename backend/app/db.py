import re
from contextlib import contextmanager

from psycopg.rows import dict_row

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings
from .errors import InvalidTenant

_SCHEMA_NAME_RE = re.compile(r"^[a-zA-Z0-9_]+$")

# One pool for every tenant; the schema is selected per transaction.
# Note: we keep row_factory=dict_row so handlers can address columns by name.
# open=False defers connecting until the first checkout (or an explicit open()).
_pool = ConnectionPool(
    conninfo=settings.db_url,
    min_size=settings.pool_min_size,
    max_size=settings.pool_max_size,
    kwargs={"row_factory": dict_row},
    open=False,
)


def _ensure_open(pool: ConnectionPool) -> ConnectionPool:
    if pool.closed:
        pool.open()
    return pool


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # Semantics of `with get_conn() as conn:`:
    # - commit on success
    # - rollback on exception
    # - return connection to pool
    # The pool's context manager already commits/rolls back, so the connection is not closed here.
    with _ensure_open(pool).connection() as conn:
        yield conn


def get_conn():
    return _pooled_conn(_pool)


def close_pools() -> None:
    if not _pool.closed:
        _pool.close()


def is_valid_schema_name(name) -> bool:
    return bool(name) and isinstance(name, str) and bool(_SCHEMA_NAME_RE.match(name))


def set_tenant_context(conn, tenant: str):
    if not is_valid_schema_name(tenant):
        raise InvalidTenant(f"invalid tenant: {tenant!r}")
    with conn.cursor() as cur:
        # `SET search_path = %s` is not valid with the extended query protocol.
        # set_config(name, value, is_local=true) scopes both settings to the current
        # transaction, so nothing leaks into the next checkout of this pooled connection.
        cur.execute(
            "SELECT set_config('search_path', %s, true)",
            (f'"{tenant}", public',),
        )
        cur.execute(
            "SELECT set_config('lock_timeout', %s, true)",
            (f"{int(settings.lock_timeout_ms)}ms",),
        )


@contextmanager
def get_tenant_conn(tenant: str):
    """
    Connection bound to one tenant schema for the lifetime of a single transaction.

    The tenant is validated before a connection is taken from the pool.
    """
    if not is_valid_schema_name(tenant):
        raise InvalidTenant(f"invalid tenant: {tenant!r}")
    with get_conn() as conn:
        set_tenant_context(conn, tenant)
        yield conn
