import logging
import threading

import pytest
from textual.widgets import OptionList, TextArea
from typer.testing import CliRunner

from runbook_sessions import cli
from runbook_sessions.cli import RunbookApp, _configure_logger, app, block_label
from runbook_sessions.controller import BlockSessionController
from runbook_sessions.document import RunBlock, RunbookDocument, RunbookStore
from runbook_sessions.settings_store import SettingsStore

runner = CliRunner()


@pytest.fixture
def runbook_path(tmp_path):
    path = tmp_path / "deploy.yaml"
    document = RunbookDocument(
        [
            RunBlock(id="build", source_text="make build\nmake test"),
            RunBlock(id="tail", source_text="tail -f app.log", session_id="runbook-0000aaaa"),
        ],
        document_id="deploy",
        title="Deploy",
    )
    RunbookStore().save(document, path)
    return path


@pytest.fixture
def settings(tmp_path):
    store = SettingsStore(tmp_path / "settings.json")
    return store


def test_blocks_command_lists_state(runbook_path, tmp_path):
    result = runner.invoke(app, ["--settings", str(tmp_path / "s.json"), "blocks", str(runbook_path)])

    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert lines[0].split("\t") == ["build", "idle", "-", "make build"]
    assert lines[1].split("\t") == ["tail", "running", "runbook-0000aaaa", "tail -f app.log"]


def test_blocks_command_on_empty_runbook(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")

    result = runner.invoke(app, ["blocks", str(path)])

    assert result.exit_code == 0, result.output
    assert "(no blocks)" in result.output


def test_export_command_writes_html(runbook_path, tmp_path):
    output = tmp_path / "deploy.html"

    result = runner.invoke(app, ["export", str(runbook_path), "--output", str(output)])

    assert result.exit_code == 0, result.output
    html = output.read_text(encoding="utf-8")
    assert html.startswith("<h1>Deploy</h1>")
    assert '<code lang="bash">tail -f app.log</code>' in html


def test_export_command_prints_to_stdout(runbook_path):
    result = runner.invoke(app, ["export", str(runbook_path)])

    assert result.exit_code == 0, result.output
    assert "make build\nmake test</code>" in result.output


def test_export_command_rejects_missing_file(tmp_path):
    result = runner.invoke(app, ["export", str(tmp_path / "missing.yaml")])

    assert result.exit_code != 0


def test_block_label_marks_running_blocks():
    assert block_label(RunBlock(id="a", source_text="  ls\npwd")) == "○ ls"
    assert block_label(RunBlock(id="a", source_text="top", session_id="s1")) == "● top"
    assert block_label(RunBlock(id="a")) == "○ (empty)"


def test_configure_logger_writes_to_file(tmp_path):
    logger = logging.getLogger(cli.LOGGER_NAME)
    saved_handlers = list(logger.handlers)
    saved_propagate = logger.propagate
    for handler in saved_handlers:
        logger.removeHandler(handler)
    try:
        log_path = tmp_path / "logs" / "runbook.log"
        configured = _configure_logger(log_path, "debug")
        _configure_logger(log_path, "debug")
        configured.getChild("controller").debug("session opened session=s1")
        for handler in configured.handlers:
            handler.flush()

        assert len(configured.handlers) == 1
        assert "DEBUG session opened session=s1" in log_path.read_text(encoding="utf-8")
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
        for handler in saved_handlers:
            logger.addHandler(handler)
        logger.propagate = saved_propagate
        logger.setLevel(logging.NOTSET)


def _build_app(transport, settings, document):
    controller = BlockSessionController(transport=transport)
    return RunbookApp(document, controller=controller, settings=settings)


@pytest.mark.asyncio
async def test_app_toggles_selected_block(transport, settings):
    document = RunbookDocument([RunBlock(id="b1", source_text="echo hi")], document_id="doc-ui")
    app = _build_app(transport, settings, document)

    async with app.run_test() as pilot:  # type: ignore[attr-defined]
        await pilot.pause()
        assert app.selected_block_id == "b1"

        await pilot.press("f5")
        await app.workers.wait_for_complete()
        await pilot.pause()

        assert document.get_block("b1").session_id == "s1"
        assert app.controller.counter.count("doc-ui") == 1
        assert ("write", "s1", "echo hi\r\n") in transport.calls

        await pilot.press("f5")
        await app.workers.wait_for_complete()
        await pilot.pause()

        assert document.get_block("b1").session_id is None
        assert app.controller.counter.count("doc-ui") == 0


@pytest.mark.asyncio
async def test_app_editor_changes_persist_to_block(transport, settings):
    document = RunbookDocument([RunBlock(id="b1", source_text="")], document_id="doc-ui")
    app = _build_app(transport, settings, document)

    async with app.run_test() as pilot:  # type: ignore[attr-defined]
        await pilot.pause()
        app.query_one("#editor", TextArea).focus()
        await pilot.press("l", "s")
        await pilot.pause()

        assert document.get_block("b1").source_text == "ls"


@pytest.mark.asyncio
async def test_app_new_block_is_inserted_and_selected(transport, settings):
    document = RunbookDocument([RunBlock(id="b1", source_text="pwd")], document_id="doc-ui")
    app = _build_app(transport, settings, document)

    async with app.run_test() as pilot:  # type: ignore[attr-defined]
        await pilot.pause()
        await pilot.press("ctrl+n")
        await pilot.pause()

        assert len(document.blocks) == 2
        assert app.selected_block_id == document.blocks[1].id
        assert app.query_one("#blocks", OptionList).option_count == 2


@pytest.mark.asyncio
async def test_app_delete_running_block_tears_down(transport, settings):
    document = RunbookDocument(
        [RunBlock(id="b1", source_text="sleep 100"), RunBlock(id="b2", source_text="ls")],
        document_id="doc-ui",
    )
    app = _build_app(transport, settings, document)

    async with app.run_test() as pilot:  # type: ignore[attr-defined]
        await pilot.pause()
        await pilot.press("f5")
        await app.workers.wait_for_complete()
        await pilot.press("ctrl+d")
        await app.workers.wait_for_complete()
        await pilot.pause()

        assert [block.id for block in document.blocks] == ["b2"]
        assert ("kill", "s1") in transport.calls
        assert len(app.controller.registry) == 0
        assert app.selected_block_id == "b2"


@pytest.mark.asyncio
async def test_app_reconciles_stale_sessions_on_mount(transport, settings):
    document = RunbookDocument(
        [RunBlock(id="b1", source_text="top", session_id="runbook-stale")],
        document_id="doc-ui",
    )
    app = _build_app(transport, settings, document)

    async with app.run_test() as pilot:  # type: ignore[attr-defined]
        await app.workers.wait_for_complete()
        await pilot.pause()

        assert document.get_block("b1").session_id is None
        assert ("kill", "runbook-stale") in transport.calls


@pytest.mark.asyncio
async def test_app_quit_closes_sessions_and_saves(transport, settings, tmp_path):
    path = tmp_path / "ops.yaml"
    document = RunbookDocument([RunBlock(id="b1", source_text="htop")], document_id="doc-ui", path=path)
    app = _build_app(transport, settings, document)

    async with app.run_test() as pilot:  # type: ignore[attr-defined]
        await pilot.pause()
        await pilot.press("f5")
        await app.workers.wait_for_complete()
        await app.run_action("quit")

    assert document.get_block("b1").session_id is None
    assert ("kill", "s1") in transport.calls
    saved = RunbookStore().load(path)
    assert saved.get_block("b1").session_id is None


@pytest.mark.asyncio
async def test_app_terminal_capture_runs_off_the_event_loop(transport, settings):
    document = RunbookDocument([RunBlock(id="b1", source_text="echo hi")], document_id="doc-ui")
    capture_threads = []
    original_capture = transport.capture

    def capture(session_id):
        capture_threads.append(threading.get_ident())
        return original_capture(session_id)

    transport.capture = capture
    settings.refresh_interval = 60
    app = _build_app(transport, settings, document)

    async with app.run_test() as pilot:  # type: ignore[attr-defined]
        await pilot.pause()
        await pilot.press("f5")
        await app.workers.wait_for_complete()
        await app._refresh_terminal()

        assert app._terminal_lines == ["$ echo hi", "hi"]
        assert app.query_one("#terminal").has_class("running")
        assert capture_threads
        assert threading.get_ident() not in capture_threads
