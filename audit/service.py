import asyncio
from contextlib import suppress
from datetime import datetime
import logging

from sqlalchemy import Engine
from sqlmodel import Session

from models.audit import AuditLog, EventSubtype, EventType

logger = logging.getLogger(__name__)


class AuditService:
    """Queues audit rows and writes them from a background task so callers never block
    on the database."""

    def __init__(self, db_engine: Engine):
        self.db_engine: Engine = db_engine
        self.audit_queue: asyncio.Queue[AuditLog] = asyncio.Queue()
        self._writer_task: asyncio.Task[None] | None = None
        self._running: bool = False

    def start(self) -> None:
        if self._writer_task is None:
            self._running = True
            self._writer_task = asyncio.create_task(self._drain_queue())

    async def stop(self) -> None:
        self._running = False
        if self._writer_task:
            self._writer_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._writer_task
            self._writer_task = None
        # Whatever is still queued gets written synchronously
        while not self.audit_queue.empty():
            self._write(self.audit_queue.get_nowait())

    async def log_event(
        self, event_type: EventType, event_subtype: EventSubtype, **event_data
    ) -> None:
        try:
            entry = AuditLog(
                timestamp=datetime.now(),
                event_type=event_type,
                event_subtype=event_subtype,
                context_data=event_data.pop("context_data", None),
                **event_data,
            )
            await self.audit_queue.put(entry)
        except Exception:
            logger.exception("Failed to enqueue audit entry %s", event_subtype)

    def _write(self, entry: AuditLog) -> None:
        try:
            with Session(self.db_engine) as session:
                session.add(entry)
                session.commit()
        except Exception:
            logger.exception("Audit write failed")

    async def _drain_queue(self) -> None:
        while self._running:
            try:
                entry = await asyncio.wait_for(self.audit_queue.get(), timeout=1.0)
            except TimeoutError:
                continue
            self._write(entry)


# Set up by main.py during start-up
audit_service: AuditService | None = None


def get_audit_service() -> AuditService:
    if audit_service is None:
        raise RuntimeError("Audit service not initialized")
    return audit_service
