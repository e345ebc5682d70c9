"""Syntax-tree grammar used by the dependency graph and the semantic index.

Only Python is supported, parsed with the standard-library ``ast`` module.
"""

from __future__ import annotations

import ast
from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class ImportSpec:
    """One import statement.

    ``import a.b`` is ``ImportSpec("a.b", 0)``; ``from ..pkg import x`` is
    ``ImportSpec("pkg", 2, ("x",))``.
    """

    module: str
    level: int = 0
    names: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Definition:
    kind: str  # function | class | method | constant
    name: str
    start_line: int
    end_line: int


class Grammar(Protocol):
    extensions: tuple[str, ...]

    def parse(self, source: str, filename: str = "<unknown>") -> object: ...

    def import_specifiers(self, tree: object) -> list[ImportSpec]: ...

    def definitions(self, tree: object) -> list[Definition]: ...


class PythonGrammar:
    extensions: tuple[str, ...] = (".py",)

    def parse(self, source: str, filename: str = "<unknown>") -> ast.Module:
        """Parse ``source``. Raises SyntaxError (or ValueError for NUL bytes)."""
        return ast.parse(source, filename=filename)

    def import_specifiers(self, tree: ast.Module) -> list[ImportSpec]:
        specs: list[ImportSpec] = []
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                specs.extend(ImportSpec(alias.name, 0) for alias in node.names)
            elif isinstance(node, ast.ImportFrom):
                names = tuple(alias.name for alias in node.names if alias.name != "*")
                specs.append(ImportSpec(node.module or "", node.level or 0, names))
        return specs

    def definitions(self, tree: ast.Module) -> list[Definition]:
        found: list[Definition] = []
        for node in tree.body:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                found.append(_definition("function", node.name, node))
            elif isinstance(node, ast.ClassDef):
                self._collect_class(node, found)
            elif isinstance(node, ast.Assign) and isinstance(node.value, ast.Lambda):
                for target in node.targets:
                    if isinstance(target, ast.Name):
                        found.append(_definition("constant", target.id, node))
        found.sort(key=lambda d: d.start_line)
        return found

    def _collect_class(self, node: ast.ClassDef, found: list[Definition]) -> None:
        found.append(_definition("class", node.name, node))
        for child in node.body:
            if isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef)):
                found.append(_definition("method", f"{node.name}.{child.name}", child))
            elif isinstance(child, ast.ClassDef):
                self._collect_class(child, found)


def _definition(kind: str, name: str, node: ast.AST) -> Definition:
    # Decorators belong to the definition they wrap
    decorators = getattr(node, "decorator_list", None) or []
    start = min([node.lineno] + [d.lineno for d in decorators])
    end = getattr(node, "end_lineno", None) or node.lineno
    return Definition(kind, name, start, end)


_grammar: Grammar | None = None


def get_grammar() -> Grammar:
    global _grammar
    if _grammar is None:
        _grammar = PythonGrammar()
    return _grammar
