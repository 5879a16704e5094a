"""
SQLite-backed work queue.

One row per discovered image. The table is the single source of truth for progress:
every status update is committed on its own, so a crash between analysing an image and
recording its status leaves the row Pending and the image is simply redone on the next run.
"""

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from types import TracebackType
from typing import Self

from loguru import logger


SCHEMA = """
CREATE TABLE IF NOT EXISTS work_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_path TEXT NOT NULL,
    status INTEGER NOT NULL DEFAULT 0,
    comment TEXT
)
"""


class ItemStatus(IntEnum):
    """Status encoding stored in the ``status`` column."""

    PENDING = 0
    SUCCEEDED = 1
    FAILED = -1


class QueueStateError(RuntimeError):
    """Raised when a status update would leave a terminal state or targets a missing row."""


@dataclass(frozen=True)
class WorkItem:
    id: int
    source_path: str
    status: ItemStatus = ItemStatus.PENDING
    comment: str | None = None

    @property
    def path(self) -> Path:
        return Path(self.source_path)


class QueueStore:
    """Operations for the work_queue table."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    @classmethod
    def open(cls, db_path: Path) -> Self:
        """
        Open (and create if needed) the queue database at ``db_path``.

        The parent directory is created when missing. ``isolation_level=None`` puts the
        connection in autocommit mode; multi-statement work uses explicit transactions.
        """
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_path), isolation_level=None)
        logger.debug("queue_database_opened", path=str(db_path))
        return cls(conn)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group several statements into one commit; rolled back if the block raises."""
        self.conn.execute("BEGIN")
        try:
            yield
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")

    def ensure_schema(self) -> None:
        self.conn.execute(SCHEMA)
        logger.debug("queue_schema_verified")

    def count_pending(self) -> int:
        cur = self.conn.execute(
            "SELECT COUNT(*) FROM work_queue WHERE status = ?",
            (int(ItemStatus.PENDING),),
        )
        return int(cur.fetchone()[0])

    def enqueue(self, source_path: str) -> int:
        """
        Append one Pending row.

        Returns:
            The new row id.

        """
        cur = self.conn.execute(
            "INSERT INTO work_queue(source_path, status) VALUES(?, ?)",
            (source_path, int(ItemStatus.PENDING)),
        )
        item_id = cur.lastrowid
        if item_id is None:
            raise RuntimeError("Failed to insert into work_queue - no row ID returned")
        return item_id

    def fetch_pending(self) -> list[WorkItem]:
        """
        Return a snapshot of all Pending rows in insertion order.

        The rows are fully materialized before returning, so status updates made while
        iterating the snapshot never add or remove items from it.
        """
        cur = self.conn.execute(
            "SELECT id, source_path, status, comment FROM work_queue WHERE status = ? ORDER BY id",
            (int(ItemStatus.PENDING),),
        )
        return [_row_to_item(row) for row in cur.fetchall()]

    def get(self, item_id: int) -> WorkItem | None:
        cur = self.conn.execute(
            "SELECT id, source_path, status, comment FROM work_queue WHERE id = ?",
            (item_id,),
        )
        row = cur.fetchone()
        return _row_to_item(row) if row else None

    def find_succeeded_with_stem(self, stem: str, exclude_id: int) -> int | None:
        """
        Return the id of another Succeeded item whose file name has the stem ``stem``.

        Two sources with the same stem (``a.jpg`` and ``a.jpeg``) share one output file.
        """
        escaped = stem.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        cur = self.conn.execute(
            "SELECT id, source_path FROM work_queue "
            "WHERE status = ? AND id != ? AND source_path LIKE ? ESCAPE '\\' ORDER BY id",
            (int(ItemStatus.SUCCEEDED), exclude_id, f"%{escaped}.%"),
        )
        for other_id, source_path in cur.fetchall():
            if Path(source_path).stem == stem:
                return int(other_id)
        return None

    def mark_succeeded(self, item_id: int) -> None:
        self._finish(item_id, ItemStatus.SUCCEEDED, None)

    def mark_failed(self, item_id: int, comment: str) -> None:
        self._finish(item_id, ItemStatus.FAILED, comment)

    def _finish(self, item_id: int, status: ItemStatus, comment: str | None) -> None:
        # Guarded on status so a terminal row can never be rewritten.
        cur = self.conn.execute(
            "UPDATE work_queue SET status = ?, comment = ? WHERE id = ? AND status = ?",
            (int(status), comment, item_id, int(ItemStatus.PENDING)),
        )
        if cur.rowcount == 1:
            return

        current = self.get(item_id)
        if current is None:
            raise QueueStateError(f"Work item {item_id} does not exist")
        raise QueueStateError(
            f"Work item {item_id} is already {current.status.name}, cannot mark {status.name}",
        )

    def stats(self) -> dict[str, int]:
        """
        Get counts of items by status.

        Returns:
            Dict with keys: 'pending', 'succeeded', 'failed'

        """
        cur = self.conn.execute("SELECT status, COUNT(*) FROM work_queue GROUP BY status")
        counts = {ItemStatus(status).name.lower(): count for status, count in cur.fetchall()}
        for status in ItemStatus:
            counts.setdefault(status.name.lower(), 0)
        return counts

    def requeue_failed(self) -> int:
        """
        Put every Failed item back to Pending.

        Only ever invoked by an explicit operator command; the driver never does this.

        Returns:
            Number of items requeued

        """
        cur = self.conn.execute(
            "UPDATE work_queue SET status = ?, comment = NULL WHERE status = ?",
            (int(ItemStatus.PENDING), int(ItemStatus.FAILED)),
        )
        return cur.rowcount


def _row_to_item(row: tuple[int, str, int, str | None]) -> WorkItem:
    item_id, source_path, status, comment = row
    return WorkItem(id=item_id, source_path=source_path, status=ItemStatus(status), comment=comment)
