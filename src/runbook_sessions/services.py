"""Service layer components for tmux sessions, session bookkeeping, and terminal views."""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional

import libtmux
from libtmux.exc import LibTmuxException

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Base class for failures reported by a session transport."""

    def __init__(self, message: str, session_id: Optional[str] = None) -> None:
        self.session_id = session_id
        super().__init__(message)


class OpenFailed(TransportError):
    """Raised when the transport could not allocate a session."""


class WriteFailed(TransportError):
    """Raised when text could not be delivered to an open session."""


class KillFailed(TransportError):
    """Raised when session teardown could not be confirmed."""


class DuplicateSession(RuntimeError):
    """Raised when a session id is bound twice in the registry."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id!r} is already bound in the registry")


class RegistryInconsistency(RuntimeError):
    """Registry and block state disagree about a session id."""

    def __init__(self, session_id: str, detail: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id!r}: {detail}")


class SessionTransport:
    """Boundary for opening, writing to, and killing interactive sessions."""

    async def open(self) -> str:
        raise NotImplementedError

    async def write(self, session_id: str, data: str) -> None:
        raise NotImplementedError

    async def kill(self, session_id: str) -> None:
        raise NotImplementedError

    def capture(self, session_id: str) -> List[str]:
        return []


class TmuxSessionTransport(SessionTransport):
    """Run each session as a detached tmux session driven through libtmux."""

    def __init__(
        self,
        *,
        session_prefix: str = "runbook",
        shell: Optional[str] = None,
        window_width: int = 200,
        window_height: int = 50,
    ) -> None:
        self.session_prefix = session_prefix
        self.shell = shell
        self.window_width = window_width
        self.window_height = window_height
        self._server = libtmux.Server()

    async def open(self) -> str:
        return await self._run(self._open_session)

    async def write(self, session_id: str, data: str) -> None:
        await self._run(self._write_session, session_id, data)

    async def kill(self, session_id: str) -> None:
        await self._run(self._kill_session, session_id)

    def capture(self, session_id: str) -> List[str]:
        session = self._find_session(session_id)
        if session is None:
            return []
        try:
            captured = self._first_pane(session).capture_pane()
        except LibTmuxException:
            return []
        if isinstance(captured, str):
            return captured.splitlines()
        return list(captured or [])

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    def _open_session(self) -> str:
        session_name = f"{self.session_prefix}-{uuid.uuid4().hex[:8]}"
        kwargs: Dict[str, Any] = {
            "session_name": session_name,
            "attach": False,
            "x": self.window_width,
            "y": self.window_height,
        }
        if self.shell:
            kwargs["window_command"] = self.shell
        try:
            self._server.new_session(**kwargs)
        except LibTmuxException as exc:
            raise OpenFailed(f"tmux could not create session {session_name}: {exc}") from exc
        logger.debug("tmux session opened name=%s", session_name)
        return session_name

    def _write_session(self, session_id: str, data: str) -> None:
        session = self._get_session(session_id, WriteFailed)
        pane = self._first_pane(session)
        lines = data.replace("\r\n", "\n").split("\n")
        try:
            for line in lines[:-1]:
                pane.send_keys(line, enter=True, literal=True)
            if lines[-1]:
                pane.send_keys(lines[-1], enter=False, literal=True)
        except LibTmuxException as exc:
            raise WriteFailed(f"Could not write to session {session_id}: {exc}", session_id) from exc

    def _kill_session(self, session_id: str) -> None:
        try:
            self._server.kill_session(session_id)
        except LibTmuxException as exc:
            raise KillFailed(f"Could not kill session {session_id}: {exc}", session_id) from exc
        logger.debug("tmux session killed name=%s", session_id)

    def _get_session(self, session_id: str, error: type):
        session = self._find_session(session_id)
        if session is not None:
            return session
        self._server = libtmux.Server()
        session = self._find_session(session_id)
        if session is not None:
            return session
        raise error(f"Session {session_id!r} not found on tmux server", session_id)

    def _find_session(self, session_id: str):
        for session in getattr(self._server, "sessions", []):
            if getattr(session, "session_name", None) == session_id:
                return session
        return None

    @staticmethod
    def _first_pane(session):
        window = session.windows[0]
        return window.panes[0]


class TerminalView:
    """Local buffer of a session's visible output, bound to one session id."""

    def __init__(
        self,
        session_id: str,
        capture: Optional[Callable[[str], List[str]]] = None,
        *,
        max_lines: int = 400,
    ) -> None:
        self.session_id = session_id
        self.max_lines = max_lines
        self._capture = capture
        self._lines: List[str] = []
        self._disposed = False

    @property
    def lines(self) -> List[str]:
        return list(self._lines)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def refresh(self) -> List[str]:
        if self._disposed or self._capture is None:
            return self.lines
        snapshot = list(self._capture(self.session_id))
        self._lines = snapshot[-self.max_lines :]
        return self.lines

    def dispose(self) -> None:
        self._lines = []
        self._capture = None
        self._disposed = True


class SessionRegistry:
    """Process-wide table of live session ids and their display resources."""

    def __init__(self) -> None:
        self._entries: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def bind(self, session_id: str, resources: Any) -> None:
        with self._lock:
            if session_id in self._entries:
                raise DuplicateSession(session_id)
            self._entries[session_id] = resources

    def unbind(self, session_id: str) -> Optional[Any]:
        with self._lock:
            return self._entries.pop(session_id, None)

    def lookup(self, session_id: str) -> Optional[Any]:
        with self._lock:
            return self._entries.get(session_id)

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class DocumentReferenceCounter:
    """Count of open sessions per runbook document."""

    def __init__(self) -> None:
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def increment(self, document_id: str) -> int:
        with self._lock:
            value = self._counts.get(document_id, 0) + 1
            self._counts[document_id] = value
            return value

    def decrement(self, document_id: str) -> int:
        with self._lock:
            current = self._counts.get(document_id, 0)
            if current <= 0:
                logger.error("session count underflow document=%s; clamped to 0", document_id)
                self._counts.pop(document_id, None)
                return 0
            value = current - 1
            if value:
                self._counts[document_id] = value
            else:
                self._counts.pop(document_id, None)
            return value

    def count(self, document_id: str) -> int:
        with self._lock:
            return self._counts.get(document_id, 0)

    def is_busy(self, document_id: str) -> bool:
        return self.count(document_id) > 0

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)
