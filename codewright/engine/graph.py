"""Import dependency graph of a workspace, and change-impact queries over it."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path

from .filesystem import is_excluded_path, iter_source_files
from .grammar import Grammar, ImportSpec

logger = logging.getLogger("codewright.graph")

# Probed in order when turning a module path into a file
_MODULE_SUFFIXES = ("", ".py", "/__init__.py")


@dataclass
class GraphNode:
    path: Path
    imports: set[Path] = field(default_factory=set)
    dependents: set[Path] = field(default_factory=set)

    def to_dict(self, root: Path) -> dict:
        def rel(p: Path) -> str:
            try:
                return p.relative_to(root).as_posix()
            except ValueError:
                return str(p)

        return {
            "path": rel(self.path),
            "imports": sorted(rel(p) for p in self.imports),
            "dependents": sorted(rel(p) for p in self.dependents),
        }


class DependencyGraph:
    """Nodes keyed by absolute file path.

    ``dependents`` is recomputed from scratch after every mutation so it is
    always the exact inverse of the import edges.
    """

    def __init__(self, root: Path, grammar: Grammar) -> None:
        self.root = Path(root).resolve()
        self.grammar = grammar
        self.nodes: dict[Path, GraphNode] = {}
        self.parse_errors: set[Path] = set()
        self._lock = threading.RLock()

    # ── Mutation ──

    def rebuild(self) -> int:
        """Rebuild every node from disk. Returns the node count."""
        nodes: dict[Path, GraphNode] = {}
        errors: set[Path] = set()
        for file_path in iter_source_files(self.root, self.grammar.extensions):
            node, ok = self._build_node(file_path.resolve())
            nodes[node.path] = node
            if not ok:
                errors.add(node.path)

        with self._lock:
            self.nodes = nodes
            self.parse_errors = errors
            self._recompute_dependents()
        logger.info(f"Dependency graph built: {len(nodes)} files, {len(errors)} with syntax errors")
        return len(nodes)

    def update_file(self, path: str | Path) -> None:
        """Replace one node after a change, or drop it if the file is gone."""
        file_path = self.resolve(path)
        if not file_path.is_file():
            self.remove_file(file_path)
            return
        if file_path.suffix not in self.grammar.extensions:
            return
        if is_excluded_path(self.root, file_path):
            logger.debug(f"Graph: ignoring excluded path {file_path}")
            return

        node, ok = self._build_node(file_path)
        with self._lock:
            self.nodes[file_path] = node
            if ok:
                self.parse_errors.discard(file_path)
            else:
                self.parse_errors.add(file_path)
            self._recompute_dependents()
        logger.debug(f"Graph node updated: {self.relative(file_path)} ({len(node.imports)} imports)")

    def remove_file(self, path: str | Path) -> None:
        file_path = self.resolve(path)
        with self._lock:
            if self.nodes.pop(file_path, None) is None:
                return
            self.parse_errors.discard(file_path)
            self._recompute_dependents()
        logger.debug(f"Graph node removed: {self.relative(file_path)}")

    def _recompute_dependents(self) -> None:
        for node in self.nodes.values():
            node.dependents = set()
        for node in self.nodes.values():
            for target in node.imports:
                target_node = self.nodes.get(target)
                if target_node is not None:
                    target_node.dependents.add(node.path)

    # ── Queries ──

    def blast_radius(self, path: str | Path, depth: int = 3) -> list[Path]:
        """Files that transitively depend on ``path``, at most ``depth`` hops away.

        Breadth-first, so nearer dependents come first. The start file is
        only included when a cycle leads back to it.
        """
        start = self.resolve(path)
        if depth <= 0:
            return []

        with self._lock:
            if start not in self.nodes:
                return []
            affected: list[Path] = []
            seen: set[Path] = set()
            queue: deque[tuple[Path, int]] = deque([(start, 0)])
            while queue:
                current, dist = queue.popleft()
                if dist >= depth:
                    continue
                node = self.nodes.get(current)
                if node is None:
                    continue
                for dependent in sorted(node.dependents):
                    if dependent in seen:
                        continue
                    seen.add(dependent)
                    affected.append(dependent)
                    queue.append((dependent, dist + 1))
            return affected

    def node(self, path: str | Path) -> GraphNode | None:
        with self._lock:
            return self.nodes.get(self.resolve(path))

    def summary(self) -> dict:
        with self._lock:
            edges = sum(len(n.imports) for n in self.nodes.values())
            return {
                "files": len(self.nodes),
                "edges": edges,
                "parse_errors": sorted(self.relative(p) for p in self.parse_errors),
            }

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "root": str(self.root),
                "nodes": [self.nodes[p].to_dict(self.root) for p in sorted(self.nodes)],
            }

    # ── Paths ──

    def resolve(self, path: str | Path) -> Path:
        p = Path(path)
        if not p.is_absolute():
            p = self.root / p
        return p.resolve()

    def relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.root).as_posix()
        except ValueError:
            return str(path)

    # ── Building ──

    def _build_node(self, file_path: Path) -> tuple[GraphNode, bool]:
        node = GraphNode(path=file_path)
        try:
            source = file_path.read_text(encoding="utf-8")
            tree = self.grammar.parse(source, filename=str(file_path))
        except (SyntaxError, ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Graph: cannot parse {self.relative(file_path)}: {e}")
            return node, False
        except OSError as e:
            logger.warning(f"Graph: cannot read {self.relative(file_path)}: {e}")
            return node, False

        for spec in self.grammar.import_specifiers(tree):
            for target in self._resolve_import(file_path, spec):
                if target != file_path:
                    node.imports.add(target)
        return node, True

    def _resolve_import(self, importer: Path, spec: ImportSpec) -> list[Path]:
        if spec.level > 0:
            base = importer.parent
            for _ in range(spec.level - 1):
                base = base.parent
        else:
            base = self.root

        module_base = base.joinpath(*spec.module.split(".")) if spec.module else base
        resolved: list[Path] = []

        if spec.module:
            target = self._module_file(module_base)
            if target is not None:
                resolved.append(target)

        submodule_found = False
        for name in spec.names:
            target = self._module_file(module_base / name)
            if target is not None:
                resolved.append(target)
                submodule_found = True

        if not spec.module and not submodule_found:
            package_init = base / "__init__.py"
            if package_init.is_file():
                resolved.append(package_init.resolve())

        # Anything unresolved is treated as an external package
        return resolved

    @staticmethod
    def _module_file(module_path: Path) -> Path | None:
        for suffix in _MODULE_SUFFIXES:
            candidate = Path(str(module_path) + suffix)
            if candidate.is_file():
                return candidate.resolve()
        return None
