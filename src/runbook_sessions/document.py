"""Runbook documents, run blocks, and their YAML persistence."""

from __future__ import annotations

import html
import threading
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import yaml


class BlockState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass(frozen=True, slots=True)
class RunBlock:
    """One executable command in a runbook."""

    id: str
    source_text: str = ""
    session_id: Optional[str] = None
    language: str = "bash"

    @property
    def state(self) -> BlockState:
        return BlockState.IDLE if self.session_id is None else BlockState.RUNNING

    def to_props(self) -> Dict[str, Any]:
        return {
            "sourceText": self.source_text,
            "sessionId": self.session_id,
            "type": self.language,
        }

    @classmethod
    def from_props(cls, block_id: str, props: Mapping[str, Any]) -> "RunBlock":
        session_id = props.get("sessionId")
        return cls(
            id=str(block_id),
            source_text=str(props.get("sourceText") or ""),
            session_id=str(session_id) if session_id else None,
            language=str(props.get("type") or "bash"),
        )


BlockListener = Callable[["RunbookDocument", RunBlock], None]

_MUTABLE_PROPS = {"source_text", "session_id", "language"}


class RunbookDocument:
    """Ordered collection of run blocks."""

    def __init__(
        self,
        blocks: Optional[List[RunBlock]] = None,
        *,
        document_id: Optional[str] = None,
        title: str = "",
        path: Optional[Path] = None,
        editable: bool = True,
    ) -> None:
        self.id = document_id or uuid.uuid4().hex
        self.title = title
        self.path = Path(path) if path else None
        self.editable = editable
        self._blocks: Dict[str, RunBlock] = {}
        self._listeners: List[BlockListener] = []
        self._lock = threading.Lock()
        for block in blocks or []:
            if block.id in self._blocks:
                raise ValueError(f"Duplicate block id {block.id!r}")
            self._blocks[block.id] = block

    @property
    def blocks(self) -> List[RunBlock]:
        with self._lock:
            return list(self._blocks.values())

    def running_blocks(self) -> List[RunBlock]:
        return [block for block in self.blocks if block.session_id is not None]

    def get_block(self, block_id: str) -> RunBlock:
        with self._lock:
            return self._blocks[block_id]

    def has_block(self, block_id: str) -> bool:
        with self._lock:
            return block_id in self._blocks

    def update_block_props(self, block_id: str, **changes: Any) -> RunBlock:
        unknown = set(changes) - _MUTABLE_PROPS
        if unknown:
            raise TypeError(f"Unknown block props: {', '.join(sorted(unknown))}")
        with self._lock:
            block = replace(self._blocks[block_id], **changes)
            self._blocks[block_id] = block
        self._notify(block)
        return block

    def insert_block(
        self,
        source_text: str = "",
        *,
        language: str = "bash",
        block_id: Optional[str] = None,
        after: Optional[str] = None,
    ) -> RunBlock:
        block = RunBlock(id=block_id or uuid.uuid4().hex, source_text=source_text, language=language)
        with self._lock:
            if block.id in self._blocks:
                raise ValueError(f"Duplicate block id {block.id!r}")
            items = list(self._blocks.items())
            position = len(items)
            if after is not None:
                keys = [key for key, _ in items]
                position = keys.index(after) + 1 if after in keys else len(items)
            items.insert(position, (block.id, block))
            self._blocks = dict(items)
        self._notify(block)
        return block

    def remove_block(self, block_id: str) -> RunBlock:
        with self._lock:
            block = self._blocks.pop(block_id)
        self._notify(block)
        return block

    def add_listener(self, listener: BlockListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: BlockListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, block: RunBlock) -> None:
        for listener in list(self._listeners):
            listener(self, block)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "blocks": [{"id": block.id, "props": block.to_props()} for block in self.blocks],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, path: Optional[Path] = None) -> "RunbookDocument":
        blocks = [
            RunBlock.from_props(entry["id"], entry.get("props") or {})
            for entry in data.get("blocks") or []
        ]
        return cls(
            blocks,
            document_id=data.get("id"),
            title=str(data.get("title") or ""),
            path=path,
        )


class RunbookStore:
    """Read and write runbooks as YAML files."""

    def load(self, path: Path) -> RunbookDocument:
        path = Path(path)
        if not path.exists():
            return RunbookDocument(title=path.stem, path=path)
        text = path.read_text(encoding="utf-8")
        data = yaml.safe_load(text) if text.strip() else None
        if not data:
            return RunbookDocument(title=path.stem, path=path)
        return RunbookDocument.from_dict(data, path=path)

    def save(self, document: RunbookDocument, path: Optional[Path] = None) -> Path:
        target = Path(path) if path else document.path
        if target is None:
            raise ValueError("Runbook has no path; pass one explicitly")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(yaml.safe_dump(document.to_dict(), sort_keys=False), encoding="utf-8")
        document.path = target
        return target


def export_html(document: RunbookDocument) -> str:
    parts: List[str] = []
    if document.title:
        parts.append(f"<h1>{html.escape(document.title)}</h1>")
    for block in document.blocks:
        language = html.escape(block.language, quote=True)
        parts.append(
            f'<pre lang="beep boop"><code lang="{language}">{html.escape(block.source_text, quote=False)}</code></pre>'
        )
    return "\n".join(parts)
