"""
Offline support: a connectivity flag and a durable FIFO of deferred
mutations that is replayed once the connection comes back.
"""
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from .constants import iso_now
from .db import queued_from_row, tx
from .errors import NotFoundError
from .models import QueuedAction

logger = logging.getLogger(__name__)


class Connectivity:
    def __init__(self, online: bool = True):
        self._online = online
        self._callbacks: List[Callable[[], None]] = []

    def is_online(self) -> bool:
        return self._online

    def on_online(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def set_online(self, online: bool) -> None:
        was_online, self._online = self._online, online
        if online and not was_online:
            logger.info("Connection restored")
            for cb in list(self._callbacks):
                cb()
        elif was_online and not online:
            logger.warning("Connection lost; mutations will be queued")


@dataclass
class FlushReport:
    succeeded: List[int] = field(default_factory=list)
    # (seq, action, reason)
    failed: List[Tuple[int, str, str]] = field(default_factory=list)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped


class ActionQueue:
    """
    `replay(action, args)` is the executor; it must raise on failure.
    Items that replay cleanly are deleted; failures stay queued, in order,
    with their attempt count and last error.
    """

    def __init__(self, conn: sqlite3.Connection, replay: Callable[[str, list], object]):
        self.conn = conn
        self.replay = replay
        self._flushing = False

    def __len__(self) -> int:
        return self.conn.execute("SELECT COUNT(*) AS c FROM action_queue").fetchone()["c"]

    def enqueue(self, action: str, args: Sequence) -> int:
        payload = json.dumps(list(args), ensure_ascii=False)
        with tx(self.conn):
            cur = self.conn.execute(
                "INSERT INTO action_queue(action, payload_json, queued_at) VALUES (?,?,?)",
                (action, payload, iso_now())
            )
        logger.info("Queued %s (#%d) while offline", action, cur.lastrowid)
        return cur.lastrowid

    def pending(self) -> List[QueuedAction]:
        rows = self.conn.execute("SELECT * FROM action_queue ORDER BY seq").fetchall()
        return [queued_from_row(r) for r in rows]

    def discard(self, seq: int) -> None:
        with tx(self.conn):
            cur = self.conn.execute("DELETE FROM action_queue WHERE seq = ?", (seq,))
            if cur.rowcount == 0:
                raise NotFoundError(f"Queued action not found: {seq}")
        logger.info("Discarded queued action #%d", seq)

    @property
    def flushing(self) -> bool:
        return self._flushing

    def flush(self) -> FlushReport:
        if self._flushing:
            # single flight: the running pass will pick everything up
            return FlushReport(skipped=True)
        self._flushing = True
        report = FlushReport()
        try:
            for item in self.pending():
                error: Optional[str] = None
                try:
                    self.replay(item.action, item.payload)
                except Exception as e:
                    error = f"{type(e).__name__}: {e}"
                if error is None:
                    self.conn.execute("DELETE FROM action_queue WHERE seq = ?", (item.seq,))
                    report.succeeded.append(item.seq)
                else:
                    self.conn.execute(
                        "UPDATE action_queue SET attempts = attempts + 1, last_error = ? WHERE seq = ?",
                        (error, item.seq)
                    )
                    report.failed.append((item.seq, item.action, error))
                    logger.warning("Replay of %s (#%d) failed: %s", item.action, item.seq, error)
        finally:
            self._flushing = False
        if report.succeeded or report.failed:
            logger.info("Queue flush: %d replayed, %d kept", len(report.succeeded), len(report.failed))
        return report
