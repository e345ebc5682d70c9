from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .. import filesystem
from ..commands import ApprovalGate, CommandRunner
from ..config import Config, get_config
from ..diffs import DiffTransaction, FileChange, count_block_markers, parse_diff_blocks
from ..errors import BackendError, ValidationError
from ..workspace import Workspace
from .formatters import format_blast_radius, format_search_results
from .models import AgentStep
from .tool_defs import MUTATING_TOOLS, TOOL_KINDS, InvalidToolCall, ToolInvocation

logger = logging.getLogger("codewright.agent")

Notify = Callable[[AgentStep], None]


class ToolExecutor:
    """Runs one validated tool invocation against the workspace.

    Every failure except BackendError comes back as an ``ERROR (<tool>): ...``
    string so the model can correct itself.
    """

    def __init__(
        self,
        workspace: Workspace,
        runner: CommandRunner | None = None,
        approvals: ApprovalGate | None = None,
        config: Config | None = None,
    ) -> None:
        self.workspace = workspace
        self.cfg = config or get_config()
        self.runner = runner or CommandRunner(self.cfg)
        self.approvals = approvals or ApprovalGate()
        self._handlers: dict[str, Callable[..., Awaitable[str]]] = {
            "read_file": self._read_file,
            "write_file": self._write_file,
            "edit_file": self._edit_file,
            "replace_lines": self._replace_lines,
            "insert_code": self._insert_code,
            "list_directory": self._list_directory,
            "search_files": self._search_files,
            "delete_file": self._delete_file,
            "create_directory": self._create_directory,
            "run_command": self._run_command,
            "validate_project": self._validate_project,
            "run_tests": self._run_tests,
            "apply_diffs": self._apply_diffs,
            "get_blast_radius": self._get_blast_radius,
            "semantic_search": self._semantic_search,
        }

    async def execute(
        self,
        invocation: ToolInvocation | InvalidToolCall,
        notify: Optional[Notify] = None,
        iteration: Optional[int] = None,
    ) -> str:
        tool = invocation.tool
        if isinstance(invocation, InvalidToolCall):
            return f"ERROR ({tool}): {invocation.error}"

        handler = self._handlers.get(tool)
        if handler is None:
            return f'ERROR ({tool}): Unknown tool "{tool}". Available tools: {", ".join(TOOL_KINDS)}'

        logger.info(f"[TOOL] {tool} {getattr(invocation, 'path', '') or getattr(invocation, 'command', '')}")
        try:
            result = await handler(invocation, notify or _ignore, iteration)
        except BackendError:
            raise
        except Exception as e:
            logger.error(f"Tool {tool} failed: {e}")
            return f"ERROR ({tool}): {e}"

        if tool in MUTATING_TOOLS:
            self.workspace.mark_dirty()
        return result

    def _path(self, path: str) -> Path:
        return self.workspace.resolve(path)

    async def _refresh(self, *paths: Path) -> None:
        for path in paths:
            if not path.resolve().is_relative_to(self.workspace.root):
                continue
            if path.exists():
                await self.workspace.file_changed(path)
            else:
                await self.workspace.file_removed(path)

    # ── Filesystem ──

    async def _read_file(self, inv, notify, iteration) -> str:
        return await asyncio.to_thread(filesystem.read_file, self._path(inv.path), inv.path)

    async def _write_file(self, inv, notify, iteration) -> str:
        path = self._path(inv.path)
        result = await asyncio.to_thread(filesystem.write_file, path, inv.content, inv.path)
        await self._refresh(path)
        return result

    async def _edit_file(self, inv, notify, iteration) -> str:
        path = self._path(inv.path)
        edits = [(e.search, e.replacement) for e in inv.edits]
        result = await asyncio.to_thread(filesystem.edit_file, path, edits, inv.path)
        await self._refresh(path)
        return result

    async def _replace_lines(self, inv, notify, iteration) -> str:
        path = self._path(inv.path)
        result = await asyncio.to_thread(
            filesystem.replace_lines, path, inv.start_line, inv.end_line, inv.content, inv.path
        )
        await self._refresh(path)
        return result

    async def _insert_code(self, inv, notify, iteration) -> str:
        path = self._path(inv.path)
        result = await asyncio.to_thread(filesystem.insert_code, path, inv.line, inv.content, inv.path)
        await self._refresh(path)
        return result

    async def _list_directory(self, inv, notify, iteration) -> str:
        return await asyncio.to_thread(
            filesystem.list_directory, self._path(inv.path), inv.path or "project root"
        )

    async def _search_files(self, inv, notify, iteration) -> str:
        return await asyncio.to_thread(
            filesystem.search_files,
            self.workspace.root,
            inv.pattern,
            inv.include,
            self.cfg.search_max_results,
            self.cfg.search_max_file_size,
        )

    async def _delete_file(self, inv, notify, iteration) -> str:
        path = self._path(inv.path)
        result = await asyncio.to_thread(filesystem.delete_file, path, inv.path)
        await self._refresh(path)
        return result

    async def _create_directory(self, inv, notify, iteration) -> str:
        return await asyncio.to_thread(filesystem.create_directory, self._path(inv.path), inv.path)

    # ── Commands ──

    async def _run_command(self, inv, notify, iteration) -> str:
        command = inv.command
        notify(AgentStep(
            tool="run_command",
            status="awaiting_permission",
            summary=f"Execute: {command}",
            iteration=iteration,
            command=command,
        ))
        approved = await self.approvals.request(command)
        if not approved:
            return "Command denied by user."

        notify(AgentStep(
            tool="run_command", status="running", summary=f"Executing: {command}", iteration=iteration
        ))
        result = await self.runner.run(command, cwd=self.workspace.root)
        return result.render()

    async def _configured_command(self, marker: str, command: str, label: str) -> str:
        if marker and not (self.workspace.root / marker).exists():
            return f"No {marker} found. Skipping {label}."
        result = await self.runner.run(command, cwd=self.workspace.root)
        if result.success:
            return f"{label.capitalize()} passed.\n{result.stdout}".strip()
        return f"{label.capitalize()} failed:\n{result.render()}"

    async def _validate_project(self, inv, notify, iteration) -> str:
        return await self._configured_command(
            self.cfg.validate_marker, self.cfg.validate_command, "validation"
        )

    async def _run_tests(self, inv, notify, iteration) -> str:
        return await self._configured_command(self.cfg.test_marker, self.cfg.test_command, "tests")

    # ── Diffs, graph, index ──

    async def _apply_diffs(self, inv, notify, iteration) -> str:
        changes: list[FileChange] = []
        malformed: list[str] = []
        for change in inv.changes:
            blocks = parse_diff_blocks(change.diff)
            attempted = count_block_markers(change.diff)
            if not blocks or len(blocks) != attempted:
                malformed.append(f"{change.path} ({len(blocks)} of {attempted} blocks parsed)")
            changes.append(FileChange(path=self._path(change.path), blocks=blocks))
        # A single bad block rejects the whole call before any file is touched
        if malformed:
            raise ValidationError(
                "Failed to parse diff blocks for "
                + ", ".join(malformed)
                + ". Use the exact format:\n<<<< SEARCH\n...\n====\n...\n>>>> REPLACE"
            )

        count = await asyncio.to_thread(DiffTransaction().apply, changes)
        await self._refresh(*dict.fromkeys(c.path for c in changes))
        return f"Successfully applied diffs to {count} files."

    async def _get_blast_radius(self, inv, notify, iteration) -> str:
        depth = inv.depth if inv.depth is not None else self.cfg.blast_radius_depth
        path = self._path(inv.path)
        if self.workspace.graph.node(path) is None and not path.exists():
            return f"ERROR (get_blast_radius): File not found: {inv.path}"
        affected = self.workspace.graph.blast_radius(path, depth)
        return format_blast_radius(inv.path, [self.workspace.relative(p) for p in affected])

    async def _semantic_search(self, inv, notify, iteration) -> str:
        index = self.workspace.index
        if index is None:
            return "ERROR (semantic_search): Semantic index is not enabled for this workspace."
        limit = inv.limit or self.cfg.semantic_search_limit
        return format_search_results(await index.search(inv.query, limit))


def _ignore(step: AgentStep) -> None:
    return None
