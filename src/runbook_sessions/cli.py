"""Typer entry point and Textual UI for running runbook blocks."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Dict, List, Optional

import typer
from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal, Vertical
from textual.message import Message
from textual.widgets import Footer, Header, OptionList, RichLog, TextArea
from textual.widgets.option_list import Option

from .controller import BlockSessionController
from .document import BlockState, RunBlock, RunbookDocument, RunbookStore, export_html
from .services import OpenFailed, TmuxSessionTransport
from .settings_store import SettingsStore

LOGGER_NAME = "runbook_sessions"


def _configure_logger(log_path: Path, level: str = "INFO") -> logging.Logger:
    """Configure a file logger for the whole package."""

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False

    if not logger.handlers:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def first_line(text: str) -> str:
    stripped = text.strip()
    return stripped.splitlines()[0] if stripped else "(empty)"


def block_label(block: RunBlock) -> str:
    marker = "●" if block.state is BlockState.RUNNING else "○"
    return f"{marker} {first_line(block.source_text)}"


class ControllerEvent(Message):
    def __init__(self, event_type: str, payload: Dict[str, object]) -> None:
        super().__init__()
        self.event_type = event_type
        self.payload = payload


class RunbookApp(App):
    CSS = """
    Screen {
        layout: vertical;
    }

    #body {
        height: 1fr;
        padding: 0 1;
    }

    #blocks {
        width: 40;
        border: round $success;
    }

    #editor {
        height: 10;
        border: round $accent;
    }

    #terminal {
        height: 1fr;
        border: round $success;
    }

    #terminal.running {
        border: round $warning;
    }

    #log {
        height: 6;
        border: round $primary-darken-1;
    }
    """

    BINDINGS = [
        Binding("ctrl+enter", "toggle_block", "Run/Stop", priority=True),
        Binding("f5", "toggle_block", "Run/Stop", priority=True),
        Binding("ctrl+n", "new_block", "New block", priority=True),
        Binding("ctrl+d", "delete_block", "Delete block", priority=True),
        Binding("ctrl+s", "save", "Save", priority=True),
        Binding("ctrl+q", "quit", "Quit", priority=True),
    ]

    def __init__(
        self,
        document: RunbookDocument,
        *,
        store: Optional[RunbookStore] = None,
        controller: Optional[BlockSessionController] = None,
        settings: Optional[SettingsStore] = None,
    ) -> None:
        super().__init__()
        self.document = document
        self.store = store or RunbookStore()
        self.settings = settings or SettingsStore()
        self.controller = controller or BlockSessionController(
            transport=TmuxSessionTransport(
                session_prefix=self.settings.session_prefix,
                shell=self.settings.shell,
                window_width=self.settings.window_width,
                window_height=self.settings.window_height,
            ),
            event_handler=self._handle_controller_event,
        )
        self.block_list: Optional[OptionList] = None
        self.editor: Optional[TextArea] = None
        self.terminal: Optional[RichLog] = None
        self.log_panel: Optional[RichLog] = None
        self._selected_block_id: Optional[str] = None
        self._terminal_lines: List[str] = []
        self._refreshing = False
        self.document.add_listener(self._on_block_changed)

    @property
    def selected_block_id(self) -> Optional[str]:
        return self._selected_block_id

    def compose(self) -> ComposeResult:
        yield Header()
        with Container(id="body"):
            with Horizontal():
                self.block_list = OptionList(id="blocks")
                yield self.block_list
                with Vertical():
                    self.editor = TextArea(
                        "",
                        id="editor",
                        read_only=not self.document.editable,
                        show_line_numbers=False,
                    )
                    yield self.editor
                    self.terminal = RichLog(id="terminal", max_lines=400)
                    yield self.terminal
            self.log_panel = RichLog(id="log", max_lines=200)
            yield self.log_panel
        yield Footer()

    async def on_mount(self) -> None:
        self.title = self.document.title or "runbook"
        self._refresh_blocks()
        blocks = self.document.blocks
        if blocks:
            self._select_block(blocks[0].id)
        self.set_interval(self.settings.refresh_interval, self._refresh_terminal)
        self.run_worker(self._reconcile(), group="sessions")
        if self.editor:
            self.editor.focus()

    async def _reconcile(self) -> None:
        cleared = await self.controller.reconcile(self.document)
        if cleared:
            self._log(f"Cleared {len(cleared)} stale session(s) from a previous run.")

    def action_toggle_block(self) -> None:
        block_id = self._selected_block_id
        if block_id is None:
            return
        self.run_worker(self._toggle(block_id), group="sessions")

    async def _toggle(self, block_id: str) -> None:
        try:
            await self.controller.toggle(self.document, block_id)
        except OpenFailed as exc:
            self._log(f"Could not start a session: {exc}")

    def action_new_block(self) -> None:
        if not self.document.editable:
            return
        block = self.document.insert_block(after=self._selected_block_id)
        self._select_block(block.id)
        if self.editor:
            self.editor.focus()

    def action_delete_block(self) -> None:
        block_id = self._selected_block_id
        if block_id is None or not self.document.editable:
            return
        self.run_worker(self._dispose(block_id), group="sessions")

    async def _dispose(self, block_id: str) -> None:
        await self.controller.dispose_block(self.document, block_id)
        if self._selected_block_id == block_id:
            self._selected_block_id = None
            blocks = self.document.blocks
            if blocks:
                self._select_block(blocks[0].id)
            else:
                self._load_editor("")

    def action_save(self) -> None:
        if self.document.path is None:
            self._log("Runbook has no file path; nothing saved.")
            return
        path = self.store.save(self.document)
        self._log(f"Saved {path}")

    async def action_quit(self) -> None:  # type: ignore[override]
        await self.controller.close_document(self.document)
        if self.document.path is not None:
            self.store.save(self.document)
        self.exit()

    def on_option_list_option_highlighted(self, event: OptionList.OptionHighlighted) -> None:
        block_id = event.option.id
        if block_id is None or block_id == self._selected_block_id:
            return
        if not self.document.has_block(block_id):
            return
        self._selected_block_id = block_id
        self._load_editor(self.document.get_block(block_id).source_text)
        self._terminal_lines = []
        if self.terminal:
            self.terminal.clear()

    def on_text_area_changed(self, event: TextArea.Changed) -> None:
        block_id = self._selected_block_id
        if block_id is None or not self.document.has_block(block_id):
            return
        text = event.text_area.text
        if self.document.get_block(block_id).source_text != text:
            self.document.update_block_props(block_id, source_text=text)

    def on_controller_event(self, event: ControllerEvent) -> None:
        if event.event_type == "log":
            self._log(str(event.payload.get("text", "")))
        elif event.event_type == "error":
            self._log(f"[{event.payload.get('kind')}] {event.payload.get('text')}")
        elif event.event_type == "block_state":
            self._refresh_blocks()

    def _handle_controller_event(self, event_type: str, payload: Dict[str, object]) -> None:
        self.post_message(ControllerEvent(event_type, payload))

    def _on_block_changed(self, document: RunbookDocument, block: RunBlock) -> None:
        if self.block_list is not None:
            self._refresh_blocks()

    def _refresh_blocks(self) -> None:
        if self.block_list is None:
            return
        self.block_list.clear_options()
        blocks = self.document.blocks
        self.block_list.add_options([Option(block_label(block), id=block.id) for block in blocks])
        for index, block in enumerate(blocks):
            if block.id == self._selected_block_id:
                self.block_list.highlighted = index
                break

    def _select_block(self, block_id: str) -> None:
        self._selected_block_id = block_id
        self._refresh_blocks()
        self._load_editor(self.document.get_block(block_id).source_text)

    def _load_editor(self, text: str) -> None:
        if self.editor is None:
            return
        self.editor.load_text(text)

    async def _refresh_terminal(self) -> None:
        if self.terminal is None or self._refreshing:
            return
        block_id = self._selected_block_id
        lines: List[str] = []
        running = False
        if block_id is not None and self.document.has_block(block_id):
            session_id = self.document.get_block(block_id).session_id
            view = self.controller.registry.lookup(session_id) if session_id else None
            if view is not None:
                running = True
                self._refreshing = True
                try:
                    loop = asyncio.get_running_loop()
                    lines = await loop.run_in_executor(None, view.refresh)
                finally:
                    self._refreshing = False
                if block_id != self._selected_block_id:
                    return
        self.terminal.set_class(running, "running")
        if lines == self._terminal_lines:
            return
        self._terminal_lines = lines
        self.terminal.clear()
        for line in lines:
            self.terminal.write(Text(line))

    def _log(self, text: str) -> None:
        if self.log_panel is not None:
            self.log_panel.write(text)


app = typer.Typer(add_completion=False, no_args_is_help=True)


@app.callback()
def main(
    ctx: typer.Context,
    settings: Annotated[
        Optional[Path],
        typer.Option("--settings", help="Settings file (default ~/.runbook-sessions/settings.json)"),
    ] = None,
) -> None:
    """Run shell commands embedded in runbook documents."""

    ctx.obj = SettingsStore(settings)


@app.command("open")
def open_runbook(
    ctx: typer.Context,
    path: Annotated[Path, typer.Argument(help="Runbook YAML file; created on save if missing")],
) -> None:
    """Open a runbook in the interactive UI."""

    settings: SettingsStore = ctx.obj
    logger = _configure_logger(settings.log_path, settings.log_level)
    store = RunbookStore()
    document = store.load(path)
    logger.info("opening runbook path=%s blocks=%d", path, len(document.blocks))
    RunbookApp(document, store=store, settings=settings).run()


@app.command("blocks")
def list_blocks(
    path: Annotated[Path, typer.Argument(exists=True, dir_okay=False, help="Runbook YAML file")],
) -> None:
    """List the blocks of a runbook and their recorded state."""

    document = RunbookStore().load(path)
    if not document.blocks:
        typer.echo("(no blocks)")
        return
    for block in document.blocks:
        session = block.session_id or "-"
        typer.echo(f"{block.id}\t{block.state.value}\t{session}\t{first_line(block.source_text)}")


@app.command("export")
def export_runbook(
    path: Annotated[Path, typer.Argument(exists=True, dir_okay=False, help="Runbook YAML file")],
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write HTML here instead of stdout"),
    ] = None,
) -> None:
    """Render a runbook as HTML."""

    document = RunbookStore().load(path)
    rendered = export_html(document)
    if output is None:
        typer.echo(rendered)
        return
    output.write_text(rendered + "\n", encoding="utf-8")
    typer.echo(f"Wrote {output}")


def run() -> None:
    app()
