"""Session lifecycle controller for run blocks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .document import BlockState, RunBlock, RunbookDocument
from .services import (
    DocumentReferenceCounter,
    DuplicateSession,
    OpenFailed,
    RegistryInconsistency,
    SessionRegistry,
    SessionTransport,
    TerminalView,
    TransportError,
    WriteFailed,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, Dict[str, object]], None]


def normalize_command(text: str) -> str:
    """Terminate the command line so the shell executes it."""

    if text.endswith("\n"):
        return text
    return text + "\r\n"


class BlockSessionController:
    """Open, feed, and tear down the interactive session bound to each run block.

    The block's persisted ``session_id`` is written only after a transition has
    been decided, so the document acts as a persistence sink. Transitions for
    one block are serialized on a per-block lock; different blocks never wait
    on each other.
    """

    def __init__(
        self,
        *,
        transport: SessionTransport,
        registry: Optional[SessionRegistry] = None,
        counter: Optional[DocumentReferenceCounter] = None,
        view_factory: Optional[Callable[[str], Any]] = None,
        event_handler: Optional[EventHandler] = None,
    ) -> None:
        self._transport = transport
        self._registry = registry if registry is not None else SessionRegistry()
        self._counter = counter if counter is not None else DocumentReferenceCounter()
        self._view_factory = view_factory or self._default_view_factory
        self._event_handler = event_handler
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._retired: Set[str] = set()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def counter(self) -> DocumentReferenceCounter:
        return self._counter

    def is_busy(self, document: RunbookDocument, block_id: str) -> bool:
        lock = self._locks.get((document.id, block_id))
        return lock is not None and lock.locked()

    async def toggle(self, document: RunbookDocument, block_id: str) -> BlockState:
        block = document.get_block(block_id)
        if not block.source_text:
            return block.state
        lock = self._lock_for(document, block_id)
        if lock.locked():
            logger.debug("toggle rejected; block busy document=%s block=%s", document.id, block_id)
            self._emit("log", {"text": f"Block {block_id} is still switching; toggle ignored."})
            return block.state
        async with lock:
            block = self._current(document, block_id)
            if block is None:
                return BlockState.IDLE
            if not block.source_text:
                return block.state
            if block.session_id is not None:
                return await self._stop_locked(document, block)
            return await self._start_locked(document, block)

    async def start(self, document: RunbookDocument, block_id: str) -> BlockState:
        async with self._lock_for(document, block_id):
            block = self._current(document, block_id)
            if block is None:
                return BlockState.IDLE
            if block.session_id is not None or not block.source_text:
                return block.state
            return await self._start_locked(document, block)

    async def stop(self, document: RunbookDocument, block_id: str) -> BlockState:
        async with self._lock_for(document, block_id):
            block = self._current(document, block_id)
            if block is None:
                return BlockState.IDLE
            if block.session_id is None:
                return block.state
            return await self._stop_locked(document, block)

    async def dispose_block(self, document: RunbookDocument, block_id: str) -> RunBlock:
        """Remove a block from its document, tearing down its session first."""

        key = (document.id, block_id)
        async with self._lock_for(document, block_id):
            block = document.get_block(block_id)
            if block.session_id is not None:
                await self._stop_locked(document, block)
            removed = document.remove_block(block_id)
        self._locks.pop(key, None)
        return removed

    async def close_document(self, document: RunbookDocument) -> None:
        running = document.running_blocks()
        if not running:
            return
        logger.info("closing runbook document=%s running=%d", document.id, len(running))
        await asyncio.gather(*(self.stop(document, block.id) for block in running))

    async def reconcile(self, document: RunbookDocument) -> List[str]:
        """Clear session ids left in a document by an earlier process."""

        cleared: List[str] = []
        for block in document.running_blocks():
            async with self._lock_for(document, block.id):
                current = self._current(document, block.id)
                session_id = current.session_id if current is not None else None
                if session_id is None or session_id in self._registry:
                    continue
                await self._kill_quietly(session_id)
                self._retired.add(session_id)
                updated = document.update_block_props(block.id, session_id=None)
                self._emit_state(document, updated)
                cleared.append(session_id)
        if cleared:
            logger.info("cleared stale sessions document=%s sessions=%s", document.id, cleared)
        return cleared

    async def _start_locked(self, document: RunbookDocument, block: RunBlock) -> BlockState:
        try:
            session_id = await self._transport.open()
        except OpenFailed as exc:
            logger.warning("open failed document=%s block=%s: %s", document.id, block.id, exc)
            self._emit("error", {"kind": "open_failed", "text": str(exc), "block_id": block.id})
            raise

        if session_id in self._retired:
            logger.error("%s", RegistryInconsistency(session_id, "transport reused a terminated session id"))
            await self._kill_quietly(session_id)
            return block.state

        view = self._view_factory(session_id)
        try:
            self._registry.bind(session_id, view)
        except DuplicateSession as exc:
            logger.error("%s; block=%s left idle", exc, block.id)
            self._dispose_view(view)
            return block.state

        count = self._counter.increment(document.id)
        logger.info(
            "session opened document=%s block=%s session=%s open_sessions=%d",
            document.id,
            block.id,
            session_id,
            count,
        )

        try:
            await self._transport.write(session_id, normalize_command(block.source_text))
        except WriteFailed as exc:
            logger.warning("write failed session=%s block=%s: %s", session_id, block.id, exc)
            self._emit("error", {"kind": "write_failed", "text": str(exc), "block_id": block.id})

        updated = document.update_block_props(block.id, session_id=session_id)
        self._emit_state(document, updated)
        return updated.state

    async def _stop_locked(self, document: RunbookDocument, block: RunBlock) -> BlockState:
        session_id = block.session_id
        assert session_id is not None
        await self._kill_quietly(session_id)
        self._retired.add(session_id)

        view = self._registry.unbind(session_id)
        if view is None:
            logger.error("%s; block=%s", RegistryInconsistency(session_id, "no registry entry at stop"), block.id)
        else:
            self._dispose_view(view)

        count = self._counter.decrement(document.id)
        updated = document.update_block_props(block.id, session_id=None)
        logger.info(
            "session closed document=%s block=%s session=%s open_sessions=%d",
            document.id,
            block.id,
            session_id,
            count,
        )
        self._emit_state(document, updated)
        return updated.state

    async def _kill_quietly(self, session_id: str) -> None:
        try:
            await self._transport.kill(session_id)
        except TransportError as exc:
            logger.warning("kill failed session=%s: %s; treating as terminated", session_id, exc)
            self._emit("log", {"text": f"Session {session_id} did not confirm shutdown; marked stopped."})

    @staticmethod
    def _current(document: RunbookDocument, block_id: str) -> Optional[RunBlock]:
        if not document.has_block(block_id):
            return None
        return document.get_block(block_id)

    def _lock_for(self, document: RunbookDocument, block_id: str) -> asyncio.Lock:
        key = (document.id, block_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _default_view_factory(self, session_id: str) -> TerminalView:
        return TerminalView(session_id, capture=self._transport.capture)

    @staticmethod
    def _dispose_view(view: Any) -> None:
        dispose = getattr(view, "dispose", None)
        if callable(dispose):
            dispose()

    def _emit_state(self, document: RunbookDocument, block: RunBlock) -> None:
        self._emit(
            "block_state",
            {
                "document_id": document.id,
                "block_id": block.id,
                "state": block.state.value,
                "session_id": block.session_id,
            },
        )

    def _emit(self, event_type: str, payload: Dict[str, object]) -> None:
        if self._event_handler is not None:
            self._event_handler(event_type, payload)
