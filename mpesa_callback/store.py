import copy
import json
import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Optional

import psycopg2
import psycopg2.extras
from psycopg2 import sql

from .config import Settings
from .errors import StoreUnavailable
from .models import TransactionRecord
from .utils import utc_now

# Configure logger
logger = logging.getLogger(__name__)

SORT_DIRECTIONS = ('asc', 'desc')

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    data JSONB NOT NULL,
    PRIMARY KEY (collection, id)
);
"""


def _check_direction(direction: str) -> str:
    direction = direction.lower()
    if direction not in SORT_DIRECTIONS:
        raise ValueError(f'Invalid sort direction: {direction}')
    return direction


# ============================================================================
# Postgres document store
# ============================================================================

class PostgresDocumentStore:
    """
    Collections of JSON documents kept in a single Postgres JSONB table.

    A connection is opened per operation and closed afterwards. The table is
    created on first use. Every psycopg2 error is re-raised as StoreUnavailable.
    """

    def __init__(self, dsn: Optional[str] = None, params: Optional[dict] = None):
        self.dsn = dsn
        self.params = params or {}
        self._schema_ready = False

    def _get_db_conn(self):
        if self.dsn:
            return psycopg2.connect(self.dsn)
        return psycopg2.connect(**self.params)

    @contextmanager
    def _cursor(self):
        try:
            conn = self._get_db_conn()
        except psycopg2.Error as e:
            raise StoreUnavailable(f'Could not connect to Postgres: {str(e)}') from e

        try:
            conn.autocommit = False
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                if not self._schema_ready:
                    cur.execute(SCHEMA_SQL)
                yield cur
            conn.commit()
            self._schema_ready = True
        except psycopg2.Error as e:
            conn.rollback()
            raise StoreUnavailable(f'Postgres operation failed: {str(e)}') from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get(self, collection: str, key: str) -> Optional[dict]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT data FROM documents WHERE collection = %s AND id = %s;",
                (collection, key),
            )
            row = cur.fetchone()
        return row['data'] if row else None

    def set(self, collection: str, key: str, document: dict) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO documents (collection, id, data)
                VALUES (%s, %s, %s)
                ON CONFLICT (collection, id) DO UPDATE
                  SET data = EXCLUDED.data;
                """,
                (collection, key, psycopg2.extras.Json(document)),
            )

    def add(self, collection: str, document: dict) -> str:
        key = uuid.uuid4().hex
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO documents (collection, id, data) VALUES (%s, %s, %s);",
                (collection, key, psycopg2.extras.Json(document)),
            )
        return key

    def query(
        self,
        collection: str,
        field: str,
        value,
        order_field: str,
        direction: str = 'desc',
        limit: int = 10,
    ) -> list[dict]:
        direction = _check_direction(direction)
        # ->> yields text, so compare against the JSON text form of non-strings
        text_value = value if isinstance(value, str) else json.dumps(value)
        query = sql.SQL(
            """
            SELECT data FROM documents
            WHERE collection = %s AND data ->> %s = %s
            ORDER BY data ->> %s {direction}
            LIMIT %s;
            """
        ).format(direction=sql.SQL(direction.upper()))
        with self._cursor() as cur:
            cur.execute(query, (collection, field, text_value, order_field, limit))
            rows = cur.fetchall()
        return [row['data'] for row in rows]

    def ping(self) -> bool:
        try:
            with self._cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
            return True
        except StoreUnavailable as e:
            logger.warning(f'Postgres not available: {str(e)}')
            return False


# ============================================================================
# In-memory document store
# ============================================================================

class MemoryDocumentStore:
    """Thread-safe in-process document store for local runs and tests."""

    def __init__(self):
        self._collections: dict[str, dict[str, dict]] = {}
        self._lock = threading.Lock()

    def get(self, collection: str, key: str) -> Optional[dict]:
        with self._lock:
            document = self._collections.get(collection, {}).get(key)
            return copy.deepcopy(document)

    def set(self, collection: str, key: str, document: dict) -> None:
        with self._lock:
            self._collections.setdefault(collection, {})[key] = copy.deepcopy(document)

    def add(self, collection: str, document: dict) -> str:
        key = uuid.uuid4().hex
        self.set(collection, key, document)
        return key

    def query(
        self,
        collection: str,
        field: str,
        value,
        order_field: str,
        direction: str = 'desc',
        limit: int = 10,
    ) -> list[dict]:
        direction = _check_direction(direction)
        with self._lock:
            matches = [
                copy.deepcopy(document)
                for document in self._collections.get(collection, {}).values()
                if document.get(field) == value
            ]

        ordered = [d for d in matches if d.get(order_field) is not None]
        unordered = [d for d in matches if d.get(order_field) is None]
        ordered.sort(key=lambda d: d[order_field], reverse=direction == 'desc')
        return (ordered + unordered)[:limit]

    def all(self, collection: str) -> list[dict]:
        """Every document in a collection, unordered; for inspecting local runs."""
        with self._lock:
            return copy.deepcopy(list(self._collections.get(collection, {}).values()))

    def ping(self) -> bool:
        return True


def create_document_store(settings: Settings):
    if settings.store_backend == 'memory':
        logger.warning('Using in-memory document store; data is lost on restart')
        return MemoryDocumentStore()
    return PostgresDocumentStore(dsn=settings.database_url, params=settings.postgres)


# ============================================================================
# Transaction store adapter
# ============================================================================

class TransactionStore:
    """Transactions keyed by CheckoutRequestID on top of a document store."""

    def __init__(self, store, collection: str = 'mpesaTransactions'):
        self.store = store
        self.collection = collection

    def _call(self, operation: str, fn, *args):
        try:
            return fn(*args)
        except StoreUnavailable:
            raise
        except Exception as e:
            raise StoreUnavailable(f'Failed to {operation}: {str(e)}') from e

    def get(self, checkout_request_id: str) -> Optional[TransactionRecord]:
        document = self._call('get transaction', self.store.get, self.collection, checkout_request_id)
        if document is None:
            return None
        return TransactionRecord.from_document(document)

    def put(self, checkout_request_id: str, record: TransactionRecord) -> TransactionRecord:
        """
        Overwrite the record stored under checkout_request_id, creating it if absent.

        Sets updated_at to now, and created_at too when the record has none.
        """
        if record.checkout_request_id != checkout_request_id:
            raise ValueError(
                f'Record key {record.checkout_request_id} does not match {checkout_request_id}'
            )

        now = utc_now()
        if record.created_at is None:
            record.created_at = now
        record.updated_at = now

        self._call(
            'save transaction',
            self.store.set,
            self.collection,
            checkout_request_id,
            record.to_document(),
        )
        return record

    def query_by_field(
        self,
        field: str,
        value,
        order_field: str = 'createdAt',
        direction: str = 'desc',
        limit: int = 10,
    ) -> list[TransactionRecord]:
        direction = _check_direction(direction)
        documents = self._call(
            f'query transactions by {field}',
            self.store.query,
            self.collection,
            field,
            value,
            order_field,
            direction,
            limit,
        )
        return [TransactionRecord.from_document(document) for document in documents]

    def ping(self) -> bool:
        return self.store.ping()
