"""
Record persistence
Upsert-with-conflict-target, range-paginated selects and counts against the
platform tables (exchanges, contacts, tasks, invoices, expenses, users).

Two backends with the same async interface:
- SupabaseRecordStore: PostgREST via supabase-py (default)
- PostgresRecordStore: direct psycopg connection (DATABASE_URL)
"""
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx
import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb
from postgrest.exceptions import APIError
from supabase import Client

from app.core.circuit_breakers import with_retry
from app.core.config import Settings
from app.core.errors import (
    PersistenceConflictError,
    PersistenceError,
    RateLimitError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
TOO_MANY_CONNECTIONS = "53300"
THROTTLE_MARKERS = ("rate limit", "too many requests", "too many connections", "remaining connection slots")
SYNC_TIMESTAMP_COLUMN = "pp_synced_at"
LOOKUP_CHUNK = 200


def _chunks(values: List[Any], size: int) -> Iterable[List[Any]]:
    for i in range(0, len(values), size):
        yield values[i:i + size]


def _is_throttled(code: Optional[str], message: str) -> bool:
    """HTTP 429 from the API gateway, or Postgres out of connection slots."""
    if code in ("429", TOO_MANY_CONNECTIONS):
        return True
    lowered = message.lower()
    return any(marker in lowered for marker in THROTTLE_MARKERS)


# ============================================================================
# SUPABASE
# ============================================================================

class SupabaseRecordStore:
    """Platform tables through the Supabase REST API."""

    backend = "supabase"

    def __init__(self, supabase: Client, read_page_size: int = 1000):
        self.supabase = supabase
        self.read_page_size = read_page_size

    @with_retry(max_attempts=3, min_wait=1, max_wait=5)
    async def _select_all(self, table: str, columns: str, order_by: str) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        start = 0
        while True:
            result = self.supabase.table(table)\
                .select(columns)\
                .order(order_by)\
                .range(start, start + self.read_page_size - 1)\
                .execute()
            page = result.data or []
            rows.extend(page)
            if len(page) < self.read_page_size:
                break
            start += self.read_page_size
        return rows

    async def fetch_existing_ids(self, table: str, key: str) -> List[Any]:
        rows = await self._select_all(table, key, key)
        return [row.get(key) for row in rows]

    async def fetch_existing_versions(self, table: str, key: str, version_column: str) -> Dict[str, Any]:
        rows = await self._select_all(table, f"{key},{version_column}", key)
        return {str(row[key]): row.get(version_column) for row in rows if row.get(key) not in (None, "")}

    async def lookup_ids(self, table: str, key: str, values: Iterable[Any]) -> Dict[str, Any]:
        """Map external key values to local row ids."""
        wanted = sorted({str(v) for v in values if v not in (None, "")})
        found: Dict[str, Any] = {}
        for chunk in _chunks(wanted, LOOKUP_CHUNK):
            result = self.supabase.table(table).select(f"id,{key}").in_(key, chunk).execute()
            for row in result.data or []:
                found[str(row[key])] = row["id"]
        return found

    async def upsert(self, table: str, rows: List[Dict[str, Any]], on_conflict: str) -> Optional[int]:
        """
        Upsert rows in one request (one transaction on the server).

        Returns None: PostgREST does not say which rows were inserted.

        Raises:
            RateLimitError: the API gateway throttled the request
            PersistenceConflictError: unique violation on a non-conflict-target column
            PersistenceError: any other rejected write
            TransientNetworkError: Supabase unreachable
        """
        try:
            self.supabase.table(table).upsert(rows, on_conflict=on_conflict).execute()
        except APIError as e:
            code = str(e.code) if e.code is not None else None
            if _is_throttled(code, e.message or str(e)):
                raise RateLimitError(f"Supabase upsert into {table} throttled: {e.message or e}")
            if code == UNIQUE_VIOLATION:
                raise PersistenceConflictError(e.message or str(e), code=code)
            raise PersistenceError(e.message or str(e), code=code)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientNetworkError(f"Supabase upsert into {table} failed: {e}")
        return None

    async def count(self, table: str) -> int:
        result = self.supabase.table(table).select("id", count="exact").limit(1).execute()
        return result.count or 0


# ============================================================================
# POSTGRES (psycopg)
# ============================================================================

class PostgresRecordStore:
    """
    Platform tables through a direct connection.

    Upserts run as INSERT ... ON CONFLICT DO UPDATE in one transaction per
    call. pp_synced_at never moves backwards (GREATEST of old and new).
    """

    backend = "postgres"

    def __init__(self, database_url: Optional[str] = None, connect: Optional[Callable[[], Any]] = None):
        if connect is None and not database_url:
            raise ValueError("PostgresRecordStore needs DATABASE_URL")
        self._connect = connect or (lambda: psycopg.connect(database_url, autocommit=False))

    @staticmethod
    def build_upsert_query(table: str, columns: List[str], on_conflict: str) -> sql.Composed:
        updates = []
        for column in columns:
            if column == on_conflict:
                continue
            if column == SYNC_TIMESTAMP_COLUMN:
                updates.append(sql.SQL("{col} = GREATEST({table}.{col}, EXCLUDED.{col})").format(
                    col=sql.Identifier(column), table=sql.Identifier(table)
                ))
            else:
                updates.append(sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(column)))

        return sql.SQL(
            "INSERT INTO {table} ({columns}) VALUES ({values}) "
            "ON CONFLICT ({key}) DO UPDATE SET {updates} "
            "RETURNING (xmax = 0) AS inserted"
        ).format(
            table=sql.Identifier(table),
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            values=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
            key=sql.Identifier(on_conflict),
            updates=sql.SQL(", ").join(updates),
        )

    @staticmethod
    def _adapt(value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return Jsonb(value)
        return value

    async def upsert(self, table: str, rows: List[Dict[str, Any]], on_conflict: str) -> Optional[int]:
        """Returns the number of rows that were inserted (the rest were updated)."""
        if not rows:
            return 0

        inserted = 0
        try:
            conn = self._connect()
        except psycopg.OperationalError as e:
            if _is_throttled(getattr(e, "sqlstate", None), str(e)):
                raise RateLimitError(f"Postgres refused a connection for {table}: {e}")
            raise TransientNetworkError(f"Postgres connection for {table} failed: {e}")

        try:
            with conn.cursor() as cur:
                for row in rows:
                    columns = sorted(row.keys())
                    query = self.build_upsert_query(table, columns, on_conflict)
                    cur.execute(query, [self._adapt(row[c]) for c in columns])
                    result = cur.fetchone()
                    if result and result[0]:
                        inserted += 1
            conn.commit()
        except psycopg.errors.UniqueViolation as e:
            conn.rollback()
            raise PersistenceConflictError(str(e), code=UNIQUE_VIOLATION)
        except psycopg.OperationalError as e:
            conn.rollback()
            if _is_throttled(getattr(e, "sqlstate", None), str(e)):
                raise RateLimitError(f"Postgres upsert into {table} throttled: {e}")
            raise TransientNetworkError(f"Postgres upsert into {table} failed: {e}")
        except psycopg.Error as e:
            conn.rollback()
            raise PersistenceError(str(e), code=getattr(e, "sqlstate", None))
        finally:
            conn.close()

        return inserted

    def _fetch(self, query: sql.Composable, params: Optional[List[Any]] = None) -> List[tuple]:
        conn = self._connect()
        try:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return cur.fetchall()
        finally:
            conn.close()

    @with_retry(max_attempts=3, min_wait=1, max_wait=5)
    async def fetch_existing_ids(self, table: str, key: str) -> List[Any]:
        query = sql.SQL("SELECT {key} FROM {table} WHERE {key} IS NOT NULL").format(
            key=sql.Identifier(key), table=sql.Identifier(table)
        )
        return [row[0] for row in self._fetch(query)]

    @with_retry(max_attempts=3, min_wait=1, max_wait=5)
    async def fetch_existing_versions(self, table: str, key: str, version_column: str) -> Dict[str, Any]:
        query = sql.SQL("SELECT {key}, {version} FROM {table} WHERE {key} IS NOT NULL").format(
            key=sql.Identifier(key), version=sql.Identifier(version_column), table=sql.Identifier(table)
        )
        return {str(row[0]): row[1] for row in self._fetch(query)}

    async def lookup_ids(self, table: str, key: str, values: Iterable[Any]) -> Dict[str, Any]:
        wanted = sorted({str(v) for v in values if v not in (None, "")})
        if not wanted:
            return {}
        query = sql.SQL("SELECT {key}, id FROM {table} WHERE {key} = ANY(%s)").format(
            key=sql.Identifier(key), table=sql.Identifier(table)
        )
        return {str(row[0]): row[1] for row in self._fetch(query, [wanted])}

    async def count(self, table: str) -> int:
        query = sql.SQL("SELECT count(*) FROM {table}").format(table=sql.Identifier(table))
        rows = self._fetch(query)
        return int(rows[0][0]) if rows else 0


# ============================================================================
# FACTORY
# ============================================================================

def build_record_store(settings: Settings, supabase: Optional[Client] = None):
    """Pick the record store backend from settings."""
    if settings.record_store_backend == "postgres":
        logger.info("💾 Record store: Postgres (psycopg)")
        return PostgresRecordStore(settings.database_url)

    if supabase is None:
        raise RuntimeError("Supabase record store selected but no Supabase client was provided")
    logger.info("💾 Record store: Supabase")
    return SupabaseRecordStore(supabase)
