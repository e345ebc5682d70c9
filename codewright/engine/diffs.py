"""Transactional multi-file search/replace.

Diff text is a sequence of blocks::

    <<<< SEARCH
    original text
    ====
    replacement text
    >>>> REPLACE

A transaction either lands every block in every file, or restores each file
it touched to its snapshot.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from .errors import TransactionFailure

logger = logging.getLogger("codewright.diffs")

_BLOCK_RE = re.compile(
    r"<<<< SEARCH\r?\n(?:(.*?)\r?\n)?====\r?\n(?:(.*?)\r?\n)?>>>> REPLACE",
    re.DOTALL,
)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


# Snapshot value for a path that did not exist before the transaction
MISSING = _Missing()


@dataclass(frozen=True)
class DiffBlock:
    search: str
    replacement: str


@dataclass
class FileChange:
    path: Path
    blocks: list[DiffBlock] = field(default_factory=list)


def parse_diff_blocks(text: str) -> list[DiffBlock]:
    """Extract every SEARCH/REPLACE block from ``text``, in order."""
    return [
        DiffBlock(search=m.group(1) or "", replacement=m.group(2) or "")
        for m in _BLOCK_RE.finditer(text or "")
    ]


def count_block_markers(text: str) -> int:
    """Number of blocks ``text`` attempts, well-formed or not."""
    text = text or ""
    return max(text.count("<<<< SEARCH"), text.count(">>>> REPLACE"))


class DiffTransaction:
    """Snapshot, apply in memory, write, and roll back on any failure."""

    def apply(self, changes: list[FileChange]) -> int:
        """Apply ``changes`` atomically and return the number of files written.

        Raises TransactionFailure after rolling back.
        """
        backups: dict[Path, str | _Missing] = {}
        for change in changes:
            if change.path in backups:
                continue
            try:
                backups[change.path] = change.path.read_text(encoding="utf-8")
            except FileNotFoundError:
                backups[change.path] = MISSING
            except (OSError, UnicodeDecodeError) as e:
                raise TransactionFailure(f"Cannot snapshot {change.path}: {e}") from e

        # Every block is resolved in memory before the first write
        working: dict[Path, str] = {}
        for change in changes:
            original = backups[change.path]
            content = working.get(change.path, "" if original is MISSING else original)
            for index, block in enumerate(change.blocks, 1):
                if block.search not in content:
                    raise TransactionFailure(
                        f"Search block {index} not found in {change.path}. "
                        "Ensure exact match including whitespace"
                    )
                content = content.replace(block.search, block.replacement, 1)
            working[change.path] = content

        attempted: list[Path] = []
        try:
            for path, content in working.items():
                attempted.append(path)
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(content, encoding="utf-8")
        except OSError as e:
            logger.error(f"Diff transaction failed while writing, rolling back: {e}")
            rollback_errors = self._rollback(backups, attempted)
            raise TransactionFailure(f"Write failed for {attempted[-1]}: {e}", rollback_errors) from e

        logger.info(f"Diff transaction committed: {len(working)} files")
        return len(working)

    @staticmethod
    def _rollback(backups: dict[Path, str | _Missing], attempted: list[Path]) -> dict[str, str]:
        errors: dict[str, str] = {}
        for path in attempted:
            original = backups[path]
            try:
                if original is MISSING:
                    path.unlink(missing_ok=True)
                else:
                    path.write_text(original, encoding="utf-8")
            except OSError as e:
                logger.error(f"Rollback failed for {path}: {e}")
                errors[str(path)] = str(e)
        return errors
