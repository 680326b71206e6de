import asyncio
from typing import List, Optional

import pytest

from runbook_sessions.controller import BlockSessionController
from runbook_sessions.document import RunBlock, RunbookDocument
from runbook_sessions.services import (
    DocumentReferenceCounter,
    KillFailed,
    OpenFailed,
    SessionRegistry,
    SessionTransport,
    WriteFailed,
)


class FakeTransport(SessionTransport):
    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.fail_open = False
        self.fail_write = False
        self.fail_kill = False
        self.open_delay = 0.0
        self.kill_delay = 0.0
        self.open_gate: Optional[asyncio.Event] = None
        self.fixed_ids: List[str] = []
        self.output = ["$ echo hi", "hi"]
        self._opened = 0

    async def open(self) -> str:
        self.calls.append(("open",))
        gate, self.open_gate = self.open_gate, None
        if gate is not None:
            await gate.wait()
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.fail_open:
            raise OpenFailed("no tty available")
        if self.fixed_ids:
            return self.fixed_ids.pop(0)
        self._opened += 1
        return f"s{self._opened}"

    async def write(self, session_id: str, data: str) -> None:
        self.calls.append(("write", session_id, data))
        if self.fail_write:
            raise WriteFailed("pipe closed", session_id)

    async def kill(self, session_id: str) -> None:
        self.calls.append(("kill", session_id))
        if self.kill_delay:
            await asyncio.sleep(self.kill_delay)
        if self.fail_kill:
            raise KillFailed("no such session", session_id)

    def capture(self, session_id: str) -> List[str]:
        return list(self.output)

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def events():
    return []


@pytest.fixture
def controller(transport, events):
    return BlockSessionController(
        transport=transport,
        registry=SessionRegistry(),
        counter=DocumentReferenceCounter(),
        event_handler=lambda event_type, payload: events.append((event_type, payload)),
    )


@pytest.fixture
def document():
    return RunbookDocument(
        [
            RunBlock(id="b1", source_text="echo hi"),
            RunBlock(id="b2", source_text="uptime\n"),
            RunBlock(id="b3", source_text=""),
        ],
        document_id="doc-1",
        title="ops",
    )
