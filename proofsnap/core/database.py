import structlog
from contextlib import contextmanager
from typing import Dict, List, Optional

import psycopg2
from psycopg2 import extras
from psycopg2.pool import SimpleConnectionPool

from proofsnap import config
from proofsnap.core.errors import NetworkError, StorageError
from proofsnap.core.index import OffChainIndex, check_binding, normalize_key
from proofsnap.models.proof import IndexEntry, RecordStatus

logger = structlog.get_logger()

__all__ = ["PostgresIndex"]

# Connection pool configuration
MIN_CONNECTIONS = 1
MAX_CONNECTIONS = 20

_RECORD_COLUMNS = """
    r.id::text AS id, r.content_hash AS digest, r.ipfs_hash AS locator,
    u.wallet_address AS creator, r.tx_hash, r.block_number, r.status,
    r.location_claim, r.device_claim, r.signature, r.created_at, r.removed_at
"""


def _row_to_entry(row: Dict) -> IndexEntry:
    return IndexEntry(**dict(row))


class PostgresIndex(OffChainIndex):
    """Off-chain index stored in the ``users`` and ``media_records`` tables."""

    name = "postgres"

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or config.INDEX_DB_DSN
        self._connection_pool = None

    def initialize_connection_pool(self):
        if self._connection_pool is None:
            try:
                self._connection_pool = SimpleConnectionPool(MIN_CONNECTIONS, MAX_CONNECTIONS, self.dsn)
                logger.info("Index connection pool initialized",
                            min_connections=MIN_CONNECTIONS,
                            max_connections=MAX_CONNECTIONS)
            except psycopg2.OperationalError as e:
                logger.error("Failed to initialize index connection pool", error=str(e))
                raise NetworkError(f"Index database unreachable: {e}", status_code=503)

    @contextmanager
    def get_db_connection(self):
        """Pooled connection with rollback on failure."""
        self.initialize_connection_pool()

        conn = None
        try:
            conn = self._connection_pool.getconn()
            yield conn
        except psycopg2.OperationalError as e:
            if conn:
                conn.rollback()
            logger.error("Index database unreachable", error=str(e))
            raise NetworkError(f"Index database unreachable: {e}", status_code=503)
        except psycopg2.Error as e:
            if conn:
                conn.rollback()
            logger.error("Index operation failed", error=str(e))
            raise StorageError(f"Index operation failed: {e}")
        finally:
            if conn:
                self._connection_pool.putconn(conn)

    def close(self):
        if self._connection_pool is not None:
            self._connection_pool.closeall()
            self._connection_pool = None

    def _get_or_create_user(self, cur, wallet_address: str) -> int:
        cur.execute("""
            INSERT INTO users (wallet_address) VALUES (%s)
            ON CONFLICT (wallet_address) DO UPDATE SET wallet_address = EXCLUDED.wallet_address
            RETURNING id
        """, (wallet_address.lower(),))
        return cur.fetchone()["id"]

    def _upsert_sync(self, entry: IndexEntry) -> IndexEntry:
        digest = normalize_key(entry.digest)
        with self.get_db_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(f"""
                    SELECT {_RECORD_COLUMNS}
                    FROM media_records r JOIN users u ON u.id = r.user_id
                    WHERE r.content_hash = %s OR r.id::text = %s
                """, (digest, entry.id))
                row = cur.fetchone()
                if row:
                    check_binding(_row_to_entry(row), entry.model_copy(update={"digest": digest}))

                user_id = self._get_or_create_user(cur, entry.creator)
                cur.execute("""
                    INSERT INTO media_records (
                        id, user_id, ipfs_hash, content_hash, tx_hash, block_number,
                        status, location_claim, device_claim, signature, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (content_hash) DO UPDATE SET
                        tx_hash = COALESCE(EXCLUDED.tx_hash, media_records.tx_hash),
                        block_number = COALESCE(EXCLUDED.block_number, media_records.block_number),
                        status = EXCLUDED.status,
                        signature = COALESCE(EXCLUDED.signature, media_records.signature),
                        removed_at = NULL
                    RETURNING id::text AS id
                """, (
                    entry.id, user_id, entry.locator, digest, entry.tx_hash, entry.block_number,
                    RecordStatus.VERIFIED.value, entry.location_claim, entry.device_claim,
                    entry.signature, entry.created_at,
                ))
                record_id = cur.fetchone()["id"]
                conn.commit()

        logger.info("Index entry upserted", record_id=record_id, digest=digest, locator=entry.locator)
        return entry.model_copy(update={"id": record_id, "digest": digest})

    def _get_sync(self, key: str) -> Optional[IndexEntry]:
        with self.get_db_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(f"""
                    SELECT {_RECORD_COLUMNS}
                    FROM media_records r JOIN users u ON u.id = r.user_id
                    WHERE (r.ipfs_hash = %s OR r.content_hash = %s) AND r.removed_at IS NULL
                    ORDER BY r.created_at DESC
                    LIMIT 1
                """, (key, key))
                row = cur.fetchone()

        return _row_to_entry(row) if row else None

    def _remove_sync(self, record_id: str) -> bool:
        with self.get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE media_records SET removed_at = NOW(), status = %s
                    WHERE id::text = %s AND removed_at IS NULL
                """, (RecordStatus.REMOVED.value, record_id))
                removed = cur.rowcount > 0
                conn.commit()

        logger.info("Index entry removal", record_id=record_id, removed=removed)
        return removed

    def _list_for_creator_sync(self, creator: str, limit: int) -> List[IndexEntry]:
        with self.get_db_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(f"""
                    SELECT {_RECORD_COLUMNS}
                    FROM media_records r JOIN users u ON u.id = r.user_id
                    WHERE u.wallet_address = %s AND r.removed_at IS NULL
                    ORDER BY r.created_at DESC
                    LIMIT %s
                """, (creator.lower(), limit))
                rows = cur.fetchall()

        return [_row_to_entry(row) for row in rows]

    def health_check(self) -> bool:
        try:
            with self.get_db_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    result = cur.fetchone()
            return result[0] == 1
        except Exception as e:
            logger.error("Index database connection check failed", error=str(e))
            return False
