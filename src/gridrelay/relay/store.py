"""Durable pending-transfer records and relay leases, backed by sqlite."""
from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..exceptions import RelayInProgressError
from .amounts import Direction

logger = logging.getLogger(__name__)


def _path_from_dsn(dsn: str) -> str:
    if not dsn.startswith("sqlite:///"):
        raise ValueError(f"unsupported DSN: {dsn}")
    raw = dsn.removeprefix("sqlite:///")
    if raw == ":memory:":
        return raw
    path = Path(raw)
    path.parent.mkdir(parents=True, exist_ok=True)
    return str(path)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PendingTransferRecord:
    """An origin transaction whose settlement has not been confirmed yet."""
    direction: Direction
    origin_tx_hash: str
    submitted_at: int

    def to_dict(self) -> dict:
        return {"txHash": self.origin_tx_hash, "timestamp": self.submitted_at}


@dataclass(frozen=True)
class Lease:
    user_id: str
    direction: Direction
    owner: str
    expires_at: int


class PendingTransferStore:
    """
    One record per ``(user_id, direction)``.

    ``put`` overwrites. Records are removed only by ``delete``, which the
    orchestrator calls after a confirmed settlement or an explicit abandon.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._lock = threading.RLock()
        # Autocommit; lease CAS opens its own IMMEDIATE transaction
        self._conn = sqlite3.connect(
            _path_from_dsn(dsn), check_same_thread=False, isolation_level=None, timeout=10.0
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS pending_transfers (
                user_id TEXT NOT NULL,
                direction TEXT NOT NULL,
                tx_hash TEXT NOT NULL,
                submitted_at INTEGER NOT NULL,
                PRIMARY KEY (user_id, direction)
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS relay_leases (
                user_id TEXT NOT NULL,
                direction TEXT NOT NULL,
                owner TEXT NOT NULL,
                expires_at INTEGER NOT NULL,
                PRIMARY KEY (user_id, direction)
            )
            """
        )

    @staticmethod
    def _key(user_id: str, direction: Direction) -> tuple[str, str]:
        return user_id.lower(), Direction.parse(direction).value

    def put(self, user_id: str, direction: Direction, record: PendingTransferRecord) -> None:
        user, dir_value = self._key(user_id, direction)
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO pending_transfers (user_id, direction, tx_hash, submitted_at) "
                "VALUES (?, ?, ?, ?)",
                (user, dir_value, record.origin_tx_hash, int(record.submitted_at)),
            )
        logger.info(f"Stored pending {dir_value} transfer {record.origin_tx_hash}")

    def get(self, user_id: str, direction: Direction) -> Optional[PendingTransferRecord]:
        user, dir_value = self._key(user_id, direction)
        with self._lock:
            row = self._conn.execute(
                "SELECT tx_hash, submitted_at FROM pending_transfers WHERE user_id = ? AND direction = ?",
                (user, dir_value),
            ).fetchone()
        if row is None:
            return None
        return PendingTransferRecord(
            direction=Direction(dir_value), origin_tx_hash=row[0], submitted_at=int(row[1])
        )

    def delete(self, user_id: str, direction: Direction) -> bool:
        user, dir_value = self._key(user_id, direction)
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM pending_transfers WHERE user_id = ? AND direction = ?",
                (user, dir_value),
            )
        if cursor.rowcount:
            logger.info(f"Cleared pending {dir_value} transfer")
        return cursor.rowcount > 0

    def acquire_lease(self, user_id: str, direction: Direction, ttl_seconds: int) -> Lease:
        """Take the relay lease for ``(user_id, direction)``.

        Compare-and-swap in one write transaction: succeeds when no lease
        exists or the existing one has expired.

        Raises:
            RelayInProgressError: Another owner holds a live lease
        """
        user, dir_value = self._key(user_id, direction)
        owner = uuid.uuid4().hex
        now = _now_ms()
        expires_at = now + ttl_seconds * 1000
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT owner, expires_at FROM relay_leases WHERE user_id = ? AND direction = ?",
                    (user, dir_value),
                ).fetchone()
                if row is not None and int(row[1]) > now:
                    raise RelayInProgressError(user, dir_value, int(row[1]))
                self._conn.execute(
                    "INSERT OR REPLACE INTO relay_leases (user_id, direction, owner, expires_at) "
                    "VALUES (?, ?, ?, ?)",
                    (user, dir_value, owner, expires_at),
                )
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")
        return Lease(user_id=user, direction=Direction(dir_value), owner=owner, expires_at=expires_at)

    def renew_lease(self, lease: Lease, ttl_seconds: int) -> Lease:
        expires_at = _now_ms() + ttl_seconds * 1000
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE relay_leases SET expires_at = ? WHERE user_id = ? AND direction = ? AND owner = ?",
                (expires_at, lease.user_id, lease.direction.value, lease.owner),
            )
        if not cursor.rowcount:
            raise RelayInProgressError(lease.user_id, lease.direction.value, expires_at)
        return Lease(lease.user_id, lease.direction, lease.owner, expires_at)

    def release_lease(self, lease: Lease) -> None:
        with self._lock:
            self._conn.execute(
                "DELETE FROM relay_leases WHERE user_id = ? AND direction = ? AND owner = ?",
                (lease.user_id, lease.direction.value, lease.owner),
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()


__all__ = ["PendingTransferStore", "PendingTransferRecord", "Lease"]
