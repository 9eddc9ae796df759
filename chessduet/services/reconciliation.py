"""
Reconciliation of the local session document with the replicated store.

The store's change feed is the producer and a single consumer task applies one snapshot at a time.
Ordering is decided by the document version only, never by arrival order, so a clock-skewed or
late push can never undo a newer state.
"""

import asyncio
import logging
from typing import Optional

from chessduet.core.config import SessionSettings
from chessduet.core.events import EventHub, EventType
from chessduet.core.exceptions import GameError, PersistenceError, SyncConflictError
from chessduet.core.models import GameSession
from chessduet.db.store import SessionStore, Subscription
from chessduet.services.orchestrator import MoveOrchestrator

logger = logging.getLogger(__name__)


class ReconciliationController:
    def __init__(
        self,
        orchestrator: MoveOrchestrator,
        store: SessionStore,
        events: EventHub,
        settings: SessionSettings,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = store
        self.events = events
        self.client_id = orchestrator.client_id
        self._queue: asyncio.Queue[GameSession] = asyncio.Queue(
            maxsize=settings.sync_queue_size
        )
        self._subscription: Optional[Subscription] = None
        self._consumer: Optional[asyncio.Task[None]] = None

    def start(self) -> None:
        """Subscribe to the store's change feed for the current session."""
        self._subscription = self.store.subscribe(
            self.orchestrator.session.id, self.offer
        )
        if self._consumer is None:
            self._consumer = asyncio.get_running_loop().create_task(self._consume())

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

    def restart(self) -> None:
        """Follow a different session document (after a restart or mode switch)."""
        if self._subscription is not None:
            self._subscription.cancel()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._subscription = self.store.subscribe(
            self.orchestrator.session.id, self.offer
        )

    # --- producer side ---
    def offer(self, remote: GameSession) -> None:
        """Store callback. When the channel is full the oldest queued snapshot makes room."""
        if remote.id != self.orchestrator.session.id:
            return
        if self._queue.full():
            dropped = self._queue.get_nowait()
            self._queue.task_done()
            logger.debug("Sync channel full, dropped version %d", dropped.version)
        self._queue.put_nowait(remote)

    # --- consumer side ---
    def apply_remote(self, remote: GameSession) -> bool:
        """
        Reducer deciding between the local and a remote document. Returns True if the remote
        document was adopted.
        ----
        - same or older version: ignored, so applying a snapshot twice is a no-op
        - our own write coming back: only the confirmed version moves forward
        - anything newer: replaces the local document, pending local moves included
        """
        local = self.orchestrator.session
        if remote.id != local.id or remote.version <= local.version:
            logger.debug(
                "Ignoring remote version %d (local version %d)", remote.version, local.version
            )
            return False

        if (
            remote.last_writer == self.client_id
            and remote.participants == local.participants
            and local.move_history[: len(remote.move_history)] == remote.move_history
        ):
            self.orchestrator.confirm_version(remote.version)
            return False

        self.orchestrator.adopt_remote(remote)
        return True

    async def resync(self) -> bool:
        """Forced one-shot pull, regardless of the subscription."""
        session_id = self.orchestrator.session.id
        try:
            remote = await self.store.get(session_id)
        except PersistenceError as exc:
            logger.warning("Resync of session %s failed: %s", session_id, exc)
            return False
        if remote is None:
            logger.warning("Session %s vanished from the store", session_id)
            return False
        return self.apply_remote(remote)

    async def on_visibility_change(self, visible: bool) -> None:
        """Regaining focus may mean pushes were missed while in the background."""
        if visible:
            await self.resync()
            self.orchestrator.writer.kick()

    async def handle_conflict(self, error: SyncConflictError) -> None:
        """Our conditional write lost: pull the winning document."""
        session = self.orchestrator.session
        self.events.emit(EventType.SYNC_CONFLICT, session.id, session.ply, error.to_dict())
        await self.resync()

    @property
    def has_queued(self) -> bool:
        return not self._queue.empty()

    async def drain(self) -> None:
        """Wait until every queued snapshot was processed."""
        await self._queue.join()

    async def _consume(self) -> None:
        while True:
            remote = await self._queue.get()
            try:
                self.apply_remote(remote)
            except GameError:
                logger.warning(
                    "Could not apply remote version %d", remote.version, exc_info=True
                )
            finally:
                self._queue.task_done()
