"""Keep the graph and semantic index in step with edits made outside the agent."""

from __future__ import annotations

import asyncio
import logging

from watchfiles import Change, DefaultFilter, awatch

from .filesystem import SKIP_DIRS
from .workspace import Workspace

logger = logging.getLogger("codewright.watcher")


class WorkspaceFilter(DefaultFilter):
    """watchfiles' default ignores plus the workspace scanner's skip dirs."""

    def __init__(self) -> None:
        super().__init__(ignore_dirs=tuple(set(DefaultFilter.ignore_dirs) | SKIP_DIRS))


async def watch_workspace(workspace: Workspace, stop_event: asyncio.Event | None = None) -> None:
    """Forward file changes to the workspace until ``stop_event`` is set."""
    logger.info(f"Watching {workspace.root} for changes")
    async for changes in awatch(workspace.root, watch_filter=WorkspaceFilter(), stop_event=stop_event):
        for change, path in sorted(changes, key=lambda c: c[1]):
            try:
                if change == Change.deleted:
                    await workspace.file_removed(path)
                else:
                    await workspace.file_changed(path)
            except OSError as e:
                logger.warning(f"Watcher could not process {path}: {e}")
        logger.debug(f"Processed {len(changes)} file change(s)")
    logger.info(f"Stopped watching {workspace.root}")
