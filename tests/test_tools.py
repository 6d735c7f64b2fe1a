import asyncio
from pathlib import Path

import pytest

from draftsman.models import ToolCall
from draftsman.tools import ToolContext, ToolRegistry, default_registry


def _context(tmp_path: Path) -> ToolContext:
    return ToolContext(base_dir=tmp_path, specialist_id="fr_writer")


def test_write_then_read_and_list(tmp_path: Path) -> None:
    registry = default_registry()
    context = _context(tmp_path)
    (tmp_path / ".draftsman").mkdir()
    (tmp_path / ".draftsman" / "state.json").write_text("{}", encoding="utf-8")

    async def _run() -> tuple:
        written = await registry.execute(
            ToolCall("write_file", {"path": "docs/fr.md", "content": "# FR\n"}), context
        )
        await registry.execute(
            ToolCall("write_file", {"path": "docs/fr.md", "content": "- FR-1\n", "append": True}),
            context,
        )
        read = await registry.execute(ToolCall("read_file", {"path": "docs/fr.md"}), context)
        listed = await registry.execute(ToolCall("list_files", {}), context)
        return written, read, listed

    written, read, listed = asyncio.run(_run())

    assert written.success is True
    assert written.output == {"path": "docs/fr.md", "bytes": 5}
    assert read.output == "# FR\n- FR-1\n"
    assert listed.output == ["docs/fr.md"]


def test_path_escape_is_reported_as_failed_result(tmp_path: Path) -> None:
    result = asyncio.run(
        default_registry().execute(
            ToolCall("read_file", {"path": "../outside.txt"}), _context(tmp_path)
        )
    )

    assert result.success is False
    assert "escapes" in (result.error or "")


def test_disallowed_and_unknown_tools_fail(tmp_path: Path) -> None:
    registry = default_registry()

    async def _run() -> tuple:
        blocked = await registry.execute(
            ToolCall("write_file", {"path": "a.md"}), _context(tmp_path), allowed=["read_file"]
        )
        unknown = await registry.execute(ToolCall("delete_all"), _context(tmp_path))
        return blocked, unknown

    blocked, unknown = asyncio.run(_run())

    assert blocked.success is False
    assert "not allowed" in (blocked.error or "")
    assert unknown.success is False
    assert not (tmp_path / "a.md").exists()


def test_control_tools_cannot_be_registered_and_are_always_described() -> None:
    registry = ToolRegistry()

    with pytest.raises(ValueError):
        registry.register("ask_question", lambda arguments, context: None)

    assert default_registry().describe(["read_file"]) == [
        "ask_question",
        "task_complete",
        "read_file",
    ]
