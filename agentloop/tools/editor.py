"""File viewing and editing tool."""

from collections import defaultdict
from pathlib import Path
from typing import Any

from agentloop.config import EditorToolConfig
from agentloop.exceptions import ToolError
from agentloop.logging import get_logger
from agentloop.tools.registry import Tool, ToolResult

log = get_logger(__name__)

COMMANDS = ("view", "create", "str_replace", "insert", "undo_edit")

TRUNCATED_NOTE = (
    "<response clipped><NOTE>To save on context only part of this file has been shown to you. "
    "You should retry this tool after you have searched inside the file with `grep -n` "
    "in order to find the line numbers of what you are looking for.</NOTE>"
)


class StrReplaceEditorTool(Tool):
    """View, create and edit files by exact string replacement.

    Edits keep a per-path history so `undo_edit` can restore the previous
    content. Paths must be absolute.
    """

    name = "str_replace_editor"
    description = (
        "Custom editing tool for viewing, creating and editing files\n"
        "* If `path` is a file, `view` displays the result of applying `cat -n`. If `path` is a "
        "directory, `view` lists non-hidden files and directories up to 2 levels deep\n"
        "* The `create` command cannot be used if the specified `path` already exists as a file\n"
        "* If a `command` generates a long output, it will be truncated and marked with `<response clipped>`\n"
        "* The `undo_edit` command will revert the last edit made to the file at `path`\n"
        "Notes for using the `str_replace` command:\n"
        "* The `old_str` parameter should match EXACTLY one or more consecutive lines from the "
        "original file. Be mindful of whitespaces!\n"
        "* If the `old_str` parameter is not unique in the file, the replacement will not be "
        "performed. Make sure to include enough context in `old_str` to make it unique\n"
        "* The `new_str` parameter should contain the edited lines that should replace the `old_str`"
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The command to run.",
                "enum": list(COMMANDS),
            },
            "path": {
                "type": "string",
                "description": "Absolute path to file or directory.",
            },
            "file_text": {
                "type": "string",
                "description": "Content of the file to be created (`create`).",
            },
            "old_str": {
                "type": "string",
                "description": "String in the file to replace (`str_replace`).",
            },
            "new_str": {
                "type": "string",
                "description": "Replacement string (`str_replace`) or the text to insert (`insert`).",
            },
            "insert_line": {
                "type": "integer",
                "description": "Line after which `new_str` is inserted; 0 inserts at the top (`insert`).",
            },
            "view_range": {
                "type": "array",
                "items": {"type": "integer"},
                "description": "Optional [start, end] line range for `view`; end -1 reads to the end.",
            },
        },
        "required": ["command", "path"],
    }

    def __init__(self, config: EditorToolConfig | None = None):
        self.config = config or EditorToolConfig()
        self._history: dict[Path, list[str]] = defaultdict(list)

    async def execute(
        self,
        command: str | None = None,
        path: str | None = None,
        file_text: str | None = None,
        old_str: str | None = None,
        new_str: str | None = None,
        insert_line: int | None = None,
        view_range: list[Any] | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        try:
            if command not in COMMANDS:
                raise ToolError(
                    f"Unrecognized command {command}. The allowed commands for the "
                    f"{self.name} tool are: {', '.join(COMMANDS)}"
                )
            target = self._validate_path(command, path)

            if command == "view":
                content = self._view(target, view_range)
            elif command == "create":
                if file_text is None:
                    raise ToolError("Parameter `file_text` is required for command: create")
                content = self._create(target, file_text)
            elif command == "str_replace":
                if not old_str:
                    raise ToolError("Parameter `old_str` is required for command: str_replace")
                content = self._str_replace(target, old_str, new_str or "")
            elif command == "insert":
                if insert_line is None:
                    raise ToolError("Parameter `insert_line` is required for command: insert")
                if new_str is None:
                    raise ToolError("Parameter `new_str` is required for command: insert")
                content = self._insert(target, int(insert_line), new_str)
            else:
                content = self._undo_edit(target)
        except ToolError as e:
            log.warning("Editor command failed", command=command, path=path, error=str(e))
            return ToolResult(success=False, error=str(e))

        log.debug("Editor command done", command=command, path=path)
        return ToolResult(content=content)

    @staticmethod
    def _validate_path(command: str, path: str | None) -> Path:
        if not path:
            raise ToolError(f"Parameter `path` is required for command: {command}")
        target = Path(path).expanduser()
        if not target.is_absolute():
            raise ToolError(f"The path {path} is not an absolute path")

        if command == "create":
            if target.exists():
                raise ToolError(f"File already exists at: {path}. Cannot overwrite files using command `create`.")
            return target

        if not target.exists():
            raise ToolError(f"The path {path} does not exist. Please provide a valid path.")
        if target.is_dir() and command != "view":
            raise ToolError(
                f"The path {path} is a directory and only the `view` command can be used on directories"
            )
        return target

    # -- commands -----------------------------------------------------------

    def _view(self, target: Path, view_range: list[Any] | None) -> str:
        if target.is_dir():
            if view_range:
                raise ToolError("The `view_range` parameter is not allowed when `path` points to a directory.")
            listing = "\n".join([str(target), *self._list_directory(target)])
            return (
                f"Here's the files and directories up to 2 levels deep in {target}, "
                f"excluding hidden items:\n{listing}\n"
            )

        text = self._read(target)
        init_line = 1
        if view_range:
            start, end = self._parse_view_range(view_range)
            lines = text.split("\n")
            total = len(lines)
            if start < 1 or start > total:
                raise ToolError(
                    f"Invalid `view_range`: {[start, end]}. Its first element `{start}` should be "
                    f"within the range of lines of the file: {[1, total]}"
                )
            if end > total:
                raise ToolError(
                    f"Invalid `view_range`: {[start, end]}. Its second element `{end}` should be "
                    f"smaller than the number of lines in the file: `{total}`"
                )
            if end != -1 and end < start:
                raise ToolError(
                    f"Invalid `view_range`: {[start, end]}. Its second element `{end}` should be "
                    f"larger or equal than its first `{start}`"
                )
            selected = lines[start - 1:] if end == -1 else lines[start - 1:end]
            text = "\n".join(selected)
            init_line = start
        return self._numbered(text, str(target), init_line)

    def _create(self, target: Path, file_text: str) -> str:
        self._write(target, file_text)
        return f"File created successfully at: {target}"

    def _str_replace(self, target: Path, old_str: str, new_str: str) -> str:
        original = self._read(target)
        text = original.expandtabs()
        old = old_str.expandtabs()
        new = new_str.expandtabs()

        positions = self._find_all(text, old)
        if not positions:
            raise ToolError(
                f"No replacement was performed, old_str `{old_str}` did not appear verbatim in {target}."
            )
        if len(positions) > 1:
            lines = [text.count("\n", 0, pos) + 1 for pos in positions]
            raise ToolError(
                f"No replacement was performed. Multiple occurrences of old_str `{old_str}` "
                f"in lines {lines}. Please ensure it is unique"
            )

        updated = text.replace(old, new)
        self._write(target, updated)
        self._history[target].append(original)

        snippet_lines = self.config.snippet_lines
        replacement_line = text.count("\n", 0, positions[0])
        start = max(0, replacement_line - snippet_lines)
        end = replacement_line + snippet_lines + new.count("\n")
        snippet = "\n".join(updated.split("\n")[start:end + 1])
        return (
            f"The file {target} has been edited. "
            + self._numbered(snippet, f"a snippet of {target}", start + 1)
            + "Review the changes and make sure they are as expected. Edit the file again if necessary."
        )

    def _insert(self, target: Path, insert_line: int, new_str: str) -> str:
        original = self._read(target)
        lines = original.expandtabs().split("\n")
        total = len(lines)
        if insert_line < 0 or insert_line > total:
            raise ToolError(
                f"Invalid `insert_line` parameter: {insert_line}. It should be within the range "
                f"of lines of the file: {[0, total]}"
            )

        snippet_lines = self.config.snippet_lines
        new_lines = new_str.expandtabs().split("\n")
        updated = lines[:insert_line] + new_lines + lines[insert_line:]
        snippet = (
            lines[max(0, insert_line - snippet_lines):insert_line]
            + new_lines
            + lines[insert_line:insert_line + snippet_lines]
        )

        self._write(target, "\n".join(updated))
        self._history[target].append(original)
        return (
            f"The file {target} has been edited. "
            + self._numbered("\n".join(snippet), "a snippet of the edited file", max(1, insert_line - snippet_lines + 1))
            + "Review the changes and make sure they are as expected (correct indentation, "
            "no duplicate lines, etc). Edit the file again if necessary."
        )

    def _undo_edit(self, target: Path) -> str:
        history = self._history.get(target)
        if not history:
            raise ToolError(f"No edit history found for {target}.")
        previous = history.pop()
        self._write(target, previous)
        return f"Last edit to {target} undone successfully. " + self._numbered(previous, str(target))

    # -- helpers ------------------------------------------------------------

    @staticmethod
    def _parse_view_range(view_range: list[Any]) -> tuple[int, int]:
        if len(view_range) != 2:
            raise ToolError("Invalid `view_range`. It should be a list of two integers.")
        try:
            return int(view_range[0]), int(view_range[1])
        except (TypeError, ValueError):
            raise ToolError("Invalid `view_range`. It should be a list of two integers.") from None

    @staticmethod
    def _find_all(text: str, needle: str) -> list[int]:
        positions = []
        index = text.find(needle)
        while index != -1:
            positions.append(index)
            index = text.find(needle, index + len(needle))
        return positions

    @staticmethod
    def _list_directory(root: Path) -> list[str]:
        found = []
        for pattern in ("*", "*/*"):
            for entry in root.glob(pattern):
                if any(part.startswith(".") for part in entry.relative_to(root).parts):
                    continue
                found.append(str(entry))
        return sorted(found)

    def _numbered(self, content: str, descriptor: str, init_line: int = 1) -> str:
        limit = self.config.max_response_chars
        if limit > 0 and len(content) > limit:
            content = content[:limit] + TRUNCATED_NOTE
        numbered = "\n".join(
            f"{index + init_line:6}\t{line}"
            for index, line in enumerate(content.expandtabs().split("\n"))
        )
        return f"Here's the result of running `cat -n` on {descriptor}:\n{numbered}\n"

    @staticmethod
    def _read(target: Path) -> str:
        try:
            return target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ToolError(f"Failed to read {target}: {e}") from e

    @staticmethod
    def _write(target: Path, content: str) -> None:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            raise ToolError(f"Failed to write {target}: {e}") from e
