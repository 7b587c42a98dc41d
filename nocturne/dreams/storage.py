"""Module storage: durable, quota-bounded store for dream analysis results."""
#
# PURPOSE:
# Keeps synthesis reports, committed surveillance signatures and memory
# fragments across restarts, without letting any of them grow unbounded.
#
# WHAT GETS STORED:
# - reports: one row per synthesis run (oldest evicted first, cap 100)
# - signatures: committed discoveries (lowest confidence evicted first, cap 500)
# - fragments: persisted memory fragments (oldest evicted first, cap 1000)
#
# Each row keeps its model as a JSON payload. Payloads above the compression
# threshold go through the injected Compressor and are flagged.
#
# KEY CONCEPTS:
# - WAL Mode: readers never block on the single writer
# - One connection, one asyncio.Lock (_db_lock) around every statement
# - BEGIN IMMEDIATE transactions: a run's signatures and report land together
# - Quota: used pages are checked at init and every N writes; above the
#   ceiling every table loses its oldest half
#

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

import aiosqlite
from pydantic import BaseModel

from nocturne.base.config import StorageConfig
from nocturne.dreams.compression import Compressor, ZlibCompressor
from nocturne.dreams.models import DreamReport, MemoryFragment, SurveillanceSignature
from nocturne.errors import ErrorCode, PersistenceError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# table -> (key column, age column used for "oldest" ordering)
_TABLES: Dict[str, Tuple[str, str]] = {
    "reports": ("synthesis_id", "start_time"),
    "signatures": ("id", "discovered_at"),
    "fragments": ("id", "timestamp"),
}


class DreamStorage:
    def __init__(
        self,
        config: Optional[StorageConfig] = None,
        compressor: Optional[Compressor] = None,
    ):
        self.config = config or StorageConfig()
        self.compressor = compressor or ZlibCompressor()
        self.db_path = str(self.config.db_path)

        self._initialized = False
        # Created lazily in init(), asyncio.Lock must be created in async context
        self._init_lock: Optional[asyncio.Lock] = None
        self._db_lock: Optional[asyncio.Lock] = None
        self._db_connection: Optional[aiosqlite.Connection] = None
        self._writes = 0
        self.cleanups = 0

    async def init(self) -> None:
        if self._initialized:
            return

        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        if self._db_lock is None:
            self._db_lock = asyncio.Lock()

        async with self._init_lock:
            if self._initialized:
                return

            try:
                self.config.base_dir.mkdir(parents=True, exist_ok=True)
                self._db_connection = await aiosqlite.connect(self.db_path, timeout=5.0)
                await self._db_connection.execute("PRAGMA journal_mode=WAL;")
                await self._db_connection.execute("PRAGMA synchronous=NORMAL;")
                await self._db_connection.execute("PRAGMA busy_timeout=5000;")
                await self._create_tables()
                await self._db_connection.commit()
                self._initialized = True
                logger.info(f"[DreamStorage] Database initialized at {self.db_path} (WAL mode)")
            except (sqlite3.Error, OSError) as e:
                logger.error(f"[DreamStorage] Init failed: {e}")
                if self._db_connection is not None:
                    await self._db_connection.close()
                    self._db_connection = None
                raise PersistenceError(
                    ErrorCode.STORE_INIT_FAILED,
                    f"Could not open analysis store: {e}",
                    details={"db_path": self.db_path},
                ) from e

        await self.enforce_quota()

    async def close(self) -> None:
        if self._db_connection:
            try:
                await self._db_connection.close()
                logger.info("[DreamStorage] Connection closed.")
            except sqlite3.Error as e:
                logger.error(f"[DreamStorage] Error closing connection: {e}")
            finally:
                self._db_connection = None
                self._initialized = False

    async def _create_tables(self) -> None:
        conn = self._db_connection
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS reports (
                synthesis_id TEXT PRIMARY KEY,
                start_time REAL NOT NULL,
                shadow_entities INTEGER NOT NULL DEFAULT 0,
                payload BLOB NOT NULL,
                compressed INTEGER NOT NULL DEFAULT 0,
                size INTEGER NOT NULL
            )
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS signatures (
                id TEXT PRIMARY KEY,
                confidence REAL NOT NULL,
                discovered_at REAL NOT NULL,
                payload BLOB NOT NULL,
                compressed INTEGER NOT NULL DEFAULT 0,
                size INTEGER NOT NULL
            )
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS fragments (
                id TEXT PRIMARY KEY,
                domain TEXT NOT NULL,
                timestamp REAL NOT NULL,
                payload BLOB NOT NULL,
                compressed INTEGER NOT NULL DEFAULT 0,
                size INTEGER NOT NULL
            )
        """)
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_reports_start ON reports(start_time)")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_signatures_conf ON signatures(confidence)")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_fragments_domain ON fragments(domain)")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_fragments_ts ON fragments(timestamp)")

    # ------------------------------------------------------------------
    # Connection discipline
    # ------------------------------------------------------------------

    async def _ensure_ready(self) -> aiosqlite.Connection:
        if not self._initialized:
            await self.init()
        if self._db_connection is None:
            raise PersistenceError(ErrorCode.STORE_NOT_INITIALIZED, "Database connection is not available")
        return self._db_connection

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        conn = await self._ensure_ready()
        async with self._db_lock:
            try:
                # Reserved lock on the file until commit/rollback
                await conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise PersistenceError(ErrorCode.STORE_WRITE_FAILED, f"{operation} failed: {e}") from e
            try:
                yield conn
                await conn.commit()
            except BaseException as e:
                try:
                    await conn.rollback()
                except sqlite3.Error as rollback_error:
                    logger.error(f"[DreamStorage] Rollback failed during {operation}: {rollback_error}")
                if isinstance(e, sqlite3.Error):
                    raise PersistenceError(
                        ErrorCode.STORE_WRITE_FAILED, f"{operation} failed: {e}"
                    ) from e
                raise
        await self._count_write()

    async def _fetch_all(self, query: str, params: tuple = ()) -> List[Any]:
        conn = await self._ensure_ready()
        try:
            async with self._db_lock:
                async with conn.execute(query, params) as cursor:
                    return list(await cursor.fetchall())
        except sqlite3.Error as e:
            raise PersistenceError(ErrorCode.STORE_READ_FAILED, f"Query failed: {e}") from e

    async def _count_write(self) -> None:
        self._writes += 1
        if self._writes % self.config.quota_check_every == 0:
            await self.enforce_quota()

    # ------------------------------------------------------------------
    # Payload codec
    # ------------------------------------------------------------------

    def _encode(self, model: BaseModel) -> Tuple[bytes, int, int]:
        raw = model.model_dump_json().encode("utf-8")
        if len(raw) > self.config.compression_threshold_bytes:
            return self.compressor.compress(raw), 1, len(raw)
        return raw, 0, len(raw)

    def _decode(self, model_cls: Type[ModelT], payload: bytes, compressed: int) -> ModelT:
        try:
            raw = self.compressor.decompress(payload) if compressed else payload
            return model_cls.model_validate_json(raw)
        except Exception as e:
            raise PersistenceError(
                ErrorCode.STORE_CODEC_FAILED,
                f"Could not decode stored {model_cls.__name__}: {e}",
            ) from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def store_synthesis_report(self, report: DreamReport) -> None:
        async with self._transaction("store_synthesis_report") as conn:
            await self._insert_report(conn, report)
            await self._enforce_caps(conn, ("reports",))

    async def store_signature(self, signature: SurveillanceSignature) -> None:
        async with self._transaction("store_signature") as conn:
            await self._insert_signature(conn, signature)
            await self._enforce_caps(conn, ("signatures",))

    async def store_fragments(self, fragments: Iterable[MemoryFragment]) -> int:
        batch = list(fragments)
        if not batch:
            return 0
        async with self._transaction("store_fragments") as conn:
            for fragment in batch:
                payload, compressed, size = self._encode(fragment)
                await conn.execute(
                    "INSERT OR REPLACE INTO fragments (id, domain, timestamp, payload, compressed, size) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (fragment.id, fragment.domain, fragment.timestamp, payload, compressed, size),
                )
            await self._enforce_caps(conn, ("fragments",))
        logger.debug(f"[DreamStorage] Stored {len(batch)} fragments")
        return len(batch)

    async def commit_synthesis(self, report: DreamReport) -> None:
        """Persist a run's signatures and its report in a single transaction."""
        async with self._transaction("commit_synthesis") as conn:
            for signature in report.shadow_entities:
                await self._insert_signature(conn, signature)
            await self._insert_report(conn, report)
            await self._enforce_caps(conn, ("signatures", "reports"))
        logger.info(
            f"[DreamStorage] Committed synthesis {report.synthesis_id}: "
            f"{len(report.shadow_entities)} signatures"
        )

    async def _insert_report(self, conn: aiosqlite.Connection, report: DreamReport) -> None:
        payload, compressed, size = self._encode(report)
        await conn.execute(
            "INSERT OR REPLACE INTO reports (synthesis_id, start_time, shadow_entities, payload, compressed, size) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (report.synthesis_id, report.start_time, len(report.shadow_entities), payload, compressed, size),
        )

    async def _insert_signature(self, conn: aiosqlite.Connection, signature: SurveillanceSignature) -> None:
        payload, compressed, size = self._encode(signature)
        await conn.execute(
            "INSERT OR REPLACE INTO signatures (id, confidence, discovered_at, payload, compressed, size) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (signature.id, signature.confidence, signature.discovered_at, payload, compressed, size),
        )

    async def _enforce_caps(self, conn: aiosqlite.Connection, tables: Iterable[str]) -> None:
        caps = {
            "reports": (self.config.max_reports, "start_time DESC"),
            "signatures": (self.config.max_signatures, "confidence DESC, discovered_at DESC"),
            "fragments": (self.config.max_fragments, "timestamp DESC"),
        }
        for table in tables:
            key, _ = _TABLES[table]
            cap, keep_order = caps[table]
            cursor = await conn.execute(
                f"DELETE FROM {table} WHERE {key} NOT IN "
                f"(SELECT {key} FROM {table} ORDER BY {keep_order} LIMIT ?)",
                (cap,),
            )
            if cursor.rowcount and cursor.rowcount > 0:
                logger.debug(f"[DreamStorage] Evicted {cursor.rowcount} rows from {table}")

    # ------------------------------------------------------------------
    # Quota
    # ------------------------------------------------------------------

    async def get_used_bytes(self) -> int:
        rows = await self._fetch_all(
            "SELECT (SELECT page_count FROM pragma_page_count()) - "
            "(SELECT freelist_count FROM pragma_freelist_count()), "
            "(SELECT page_size FROM pragma_page_size())"
        )
        pages, page_size = rows[0]
        return int(pages) * int(page_size)

    async def enforce_quota(self) -> bool:
        """Run the aggressive cleanup when usage is above the ceiling. Returns True if it ran."""
        used = await self.get_used_bytes()
        limit = int(self.config.max_storage_mb * 1024 * 1024)
        if used <= limit:
            return False

        logger.warning(
            f"[DreamStorage] Storage quota exceeded ({used / 1024 / 1024:.2f}MB > "
            f"{self.config.max_storage_mb}MB), running aggressive cleanup"
        )
        await self._aggressive_cleanup()
        return True

    async def _aggressive_cleanup(self) -> None:
        ratio = self.config.aggressive_cleanup_ratio
        conn = await self._ensure_ready()
        async with self._db_lock:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                for table, (key, age_column) in _TABLES.items():
                    async with conn.execute(f"SELECT COUNT(*) FROM {table}") as cursor:
                        (count,) = await cursor.fetchone()
                    to_delete = int(count * ratio)
                    if to_delete <= 0:
                        continue
                    await conn.execute(
                        f"DELETE FROM {table} WHERE {key} IN "
                        f"(SELECT {key} FROM {table} ORDER BY {age_column} ASC LIMIT ?)",
                        (to_delete,),
                    )
                    logger.info(f"[DreamStorage] Cleanup removed {to_delete} of {count} rows from {table}")
                await conn.commit()
            except sqlite3.Error as e:
                await conn.rollback()
                raise PersistenceError(
                    ErrorCode.STORE_QUOTA_EXCEEDED, f"Aggressive cleanup failed: {e}"
                ) from e
        self.cleanups += 1

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_recent_reports(self, limit: int = 10) -> List[DreamReport]:
        rows = await self._fetch_all(
            "SELECT payload, compressed FROM reports ORDER BY start_time DESC LIMIT ?", (limit,)
        )
        return [self._decode(DreamReport, payload, compressed) for payload, compressed in rows]

    async def get_high_confidence_signatures(
        self, min_confidence: float = 0.85, limit: Optional[int] = None
    ) -> List[SurveillanceSignature]:
        rows = await self._fetch_all(
            "SELECT payload, compressed FROM signatures WHERE confidence >= ? "
            "ORDER BY confidence DESC, discovered_at DESC LIMIT ?",
            (min_confidence, limit if limit is not None else -1),
        )
        return [self._decode(SurveillanceSignature, payload, compressed) for payload, compressed in rows]

    async def get_fragments(self, limit: int = 100, domain: Optional[str] = None) -> List[MemoryFragment]:
        """Newest persisted fragments, optionally for a single domain."""
        if domain is not None:
            rows = await self._fetch_all(
                "SELECT payload, compressed FROM fragments WHERE domain = ? "
                "ORDER BY timestamp DESC LIMIT ?",
                (domain.strip().lower(), limit),
            )
        else:
            rows = await self._fetch_all(
                "SELECT payload, compressed FROM fragments ORDER BY timestamp DESC LIMIT ?", (limit,)
            )
        return [self._decode(MemoryFragment, payload, compressed) for payload, compressed in rows]

    async def count(self, table: str) -> int:
        if table not in _TABLES:
            raise ValueError(f"Unknown table {table!r}")
        rows = await self._fetch_all(f"SELECT COUNT(*) FROM {table}")
        return int(rows[0][0])

    async def get_statistics(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {table: await self.count(table) for table in _TABLES}
        compressed = await self._fetch_all(
            "SELECT (SELECT COUNT(*) FROM reports WHERE compressed = 1) + "
            "(SELECT COUNT(*) FROM signatures WHERE compressed = 1) + "
            "(SELECT COUNT(*) FROM fragments WHERE compressed = 1)"
        )
        used = await self.get_used_bytes()
        stats.update({
            "compressed_rows": int(compressed[0][0]),
            "used_bytes": used,
            "quota_bytes": int(self.config.max_storage_mb * 1024 * 1024),
            "quota_percentage": used / (self.config.max_storage_mb * 1024 * 1024) * 100.0,
            "cleanups": self.cleanups,
        })
        return stats

    async def clear_all(self) -> None:
        async with self._transaction("clear_all") as conn:
            for table in _TABLES:
                await conn.execute(f"DELETE FROM {table}")
        logger.info("[DreamStorage] All tables cleared")
