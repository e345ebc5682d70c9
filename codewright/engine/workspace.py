"""The open project: root path, manifest, and the graph/index services over it."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from .config import Config, get_config
from .embeddings import Embedder
from .errors import BackendError, NotFoundError
from .filesystem import build_manifest, is_excluded_path
from .grammar import Grammar, get_grammar
from .graph import DependencyGraph
from .index import SemanticIndex
from .store import STORE_FILENAME, VectorStore, store_dir_for

logger = logging.getLogger("codewright.workspace")


class Workspace:
    """Wires the dependency graph and semantic index to one project root."""

    def __init__(
        self,
        root: str | Path,
        config: Config | None = None,
        embedder: Embedder | None = None,
        grammar: Grammar | None = None,
        store: VectorStore | None = None,
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        if not self.root.is_dir():
            raise NotFoundError(f"Workspace directory not found: {root}")

        self.cfg = config or get_config()
        self.grammar = grammar or get_grammar()
        self.graph = DependencyGraph(self.root, self.grammar)
        self.index: SemanticIndex | None = None
        self.index_status = "disabled"
        if embedder is not None and self.cfg.embedding_enabled:
            store = store or VectorStore(store_dir_for(self.root) / STORE_FILENAME)
            self.index = SemanticIndex(self.root, self.grammar, embedder, store)
            self.index_status = "pending"

        self._manifest = ""
        self._dirty = True
        self._index_task: asyncio.Task | None = None

    async def open(self, index_in_background: bool = True) -> None:
        """Build the graph and manifest, then reconcile the semantic index."""
        await asyncio.to_thread(self.graph.rebuild)
        self.mark_dirty()
        logger.info(f"Workspace opened: {self.root}")

        if self.index is None:
            return
        await asyncio.to_thread(self.index.store.load)
        if index_in_background:
            self._index_task = asyncio.create_task(self.reindex())
        else:
            await self.reindex()

    async def reindex(self) -> None:
        if self.index is None:
            return
        self.index_status = "indexing"
        try:
            await self.index.index_workspace()
        except BackendError as e:
            logger.error(f"Semantic indexing failed: {e}")
            self.index_status = "error"
            return
        self.index_status = "ready"

    async def close(self) -> None:
        if self._index_task is not None and not self._index_task.done():
            self._index_task.cancel()
            try:
                await self._index_task
            except asyncio.CancelledError:
                pass
        self._index_task = None
        if self.index is not None:
            await asyncio.to_thread(self.index.store.save)
        logger.info(f"Workspace closed: {self.root}")

    # ── Paths ──

    def resolve(self, path: str | Path | None) -> Path:
        """Absolute paths pass through; relative ones join the root."""
        if not path:
            return self.root
        p = Path(path).expanduser()
        return p if p.is_absolute() else self.root / p

    def relative(self, path: str | Path) -> str:
        p = Path(path)
        try:
            return p.resolve().relative_to(self.root).as_posix()
        except ValueError:
            return str(p)

    # ── Manifest ──

    @property
    def manifest(self) -> str:
        if self._dirty:
            self._manifest = build_manifest(self.root, self.cfg.manifest_max_files)
            self._dirty = False
        return self._manifest

    def mark_dirty(self) -> None:
        self._dirty = True

    # ── Change notifications ──

    async def file_changed(self, path: str | Path) -> None:
        file_path = self.resolve(path)
        if file_path.suffix in self.grammar.extensions and not is_excluded_path(self.root, file_path):
            if self.index is not None:
                try:
                    await self.index.index_file(file_path)
                except BackendError as e:
                    logger.error(f"Re-index of {self.relative(file_path)} failed: {e}")
            await asyncio.to_thread(self.graph.update_file, file_path)
        self.mark_dirty()

    async def file_removed(self, path: str | Path) -> None:
        file_path = self.resolve(path)
        if self.index is not None:
            await self.index.remove_file(file_path)
        await asyncio.to_thread(self.graph.remove_file, file_path)
        self.mark_dirty()

    # ── Status ──

    def status(self) -> dict:
        return {
            "root": str(self.root),
            "graph": self.graph.summary(),
            "index": {
                "status": self.index_status,
                "chunks": len(self.index.store) if self.index is not None else 0,
            },
        }

    def project_status(self, active_file: str | None = None) -> str:
        """Project context for the system preamble."""
        manifest = self.manifest
        file_count = sum(1 for line in manifest.splitlines() if line.startswith("- "))
        graph = self.graph.summary()
        parts = [
            f"Project Indexed. Files found: {file_count}",
            manifest,
            f"Dependency graph: {graph['files']} files, {graph['edges']} import edges.",
            f"Semantic index: {self.index_status}.",
        ]

        if active_file:
            active_path = self.resolve(active_file)
            try:
                content = active_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.debug(f"Active file unreadable: {e}")
                content = ""
            limit = self.cfg.tool_result_max_chars
            if len(content) > limit:
                content = content[:limit] + f"\n... (truncated, {len(content)} chars total)"
            parts.append(
                f"### ACTIVE FILE (CURRENTLY OPEN IN EDITOR):\nPath: {self.relative(active_path)}\n"
                f"Content:\n{content}"
            )
        return "\n\n".join(parts)
