"""Workspace file operations used by the tool executor.

All functions are synchronous and take already-resolved absolute paths; the
executor runs them through ``asyncio.to_thread``. Failures raise ToolError
subclasses.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from pathlib import Path
from typing import Iterator

from .errors import NotFoundError, ValidationError

logger = logging.getLogger("codewright.filesystem")

# Directories never descended into while scanning a workspace
SKIP_DIRS = frozenset({
    "node_modules", ".git", "dist", "dist-electron", ".next", "__pycache__",
    ".venv", "venv", ".cache", "coverage", ".idea", ".vscode", "build", "out",
    "bin", "obj", ".mypy_cache", ".pytest_cache", ".tox", "site-packages",
})

BINARY_EXTS = frozenset({
    ".png", ".jpg", ".jpeg", ".gif", ".ico", ".webp", ".svg", ".woff", ".woff2",
    ".ttf", ".eot", ".mp3", ".mp4", ".zip", ".tar", ".gz", ".exe", ".dll", ".so",
    ".dylib", ".lock", ".pdf", ".bin", ".pyc", ".node", ".whl",
})


def iter_source_files(
    root: Path, extensions: tuple[str, ...] | None = None, include_hidden: bool = False
) -> Iterator[Path]:
    """Walk ``root`` depth-first, pruning SKIP_DIRS and hidden directories.

    With ``extensions`` only files with a matching suffix are yielded;
    otherwise every file whose extension is not a known binary one.
    """
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames
            if d not in SKIP_DIRS and (include_hidden or not d.startswith("."))
        )
        for name in sorted(filenames):
            suffix = os.path.splitext(name)[1].lower()
            if extensions is not None:
                if suffix not in extensions:
                    continue
            elif suffix in BINARY_EXTS:
                continue
            yield Path(dirpath) / name


def is_excluded_path(root: Path, path: Path) -> bool:
    """True for paths ``iter_source_files`` would never yield from ``root``."""
    try:
        parts = Path(path).resolve().relative_to(Path(root).resolve()).parts
    except ValueError:
        return True
    return any(d in SKIP_DIRS or d.startswith(".") for d in parts[:-1])


def is_binary_file(path: Path) -> bool:
    """Check the first 1 KB for a NUL byte."""
    with open(path, "rb") as f:
        return b"\0" in f.read(1024)


def _require_file(path: Path, display: str) -> None:
    if not path.exists():
        raise NotFoundError(f"File not found: {display}")
    if path.is_dir():
        raise ValidationError(f"{display} is a directory, not a file")


def _split_lines(content: str) -> list[str]:
    return content.split("\n")


def read_file(path: Path, display: str) -> str:
    _require_file(path, display)
    if is_binary_file(path):
        raise ValidationError(f"Cannot read {display}: This appears to be a binary file.")
    content = path.read_text(encoding="utf-8", errors="replace")
    return "\n".join(f"{i}: {line}" for i, line in enumerate(_split_lines(content), 1))


def write_file(path: Path, content: str, display: str) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return f"Wrote {len(_split_lines(content))} lines to {display}"


def _collapse_ws(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def edit_file(path: Path, edits: list[tuple[str, str]], display: str) -> str:
    """Replace the first occurrence of each search text, in order.

    Nothing is written unless every edit resolves.
    """
    _require_file(path, display)
    content = path.read_text(encoding="utf-8")
    for search, replacement in edits:
        if not search:
            raise ValidationError(f"edit_file on {display}: search text must not be empty")
        if search in content:
            content = content.replace(search, replacement, 1)
            continue
        if _collapse_ws(search) and _collapse_ws(search) in _collapse_ws(content):
            raise ValidationError(
                f"edit_file failed for {display}: The search string exists but "
                "whitespace/indentation did not match exactly. Use read_file again to get "
                "the EXACT indentation, or write_file to overwrite the file.\n"
                f'Searched for: "{search[:50]}..."'
            )
        raise ValidationError(
            f"edit_file failed: could not find the following code block in {display}:\n\n"
            f"{search}\n\nMake sure you have the latest content via read_file."
        )
    path.write_text(content, encoding="utf-8")
    return f"Applied {len(edits)} edit(s) to {display}"


def replace_lines(path: Path, start_line: int, end_line: int, content: str, display: str) -> str:
    """Replace the inclusive 1-based range [start_line, end_line], clamped to the file."""
    _require_file(path, display)
    if end_line < start_line:
        raise ValidationError(f"end_line ({end_line}) is before start_line ({start_line})")
    lines = _split_lines(path.read_text(encoding="utf-8"))
    start_idx = max(0, start_line - 1)
    end_idx = min(len(lines), end_line)
    lines[start_idx:end_idx] = [content]
    path.write_text("\n".join(lines), encoding="utf-8")
    return f"Replaced lines {start_line}-{end_line} in {display}"


def insert_code(path: Path, line: int, content: str, display: str) -> str:
    """Insert ``content`` after ``line`` (0 inserts at the top), clamped to the file."""
    _require_file(path, display)
    lines = _split_lines(path.read_text(encoding="utf-8"))
    idx = min(len(lines), max(0, line))
    lines[idx:idx] = [content]
    path.write_text("\n".join(lines), encoding="utf-8")
    return f"Inserted code after line {line} in {display}"


def list_directory(path: Path, display: str) -> str:
    if not path.exists():
        raise NotFoundError(f"Directory not found: {display}")
    if not path.is_dir():
        raise ValidationError(f"{display} is not a directory")
    lines = []
    for entry in sorted(path.iterdir(), key=lambda p: p.name):
        try:
            if entry.is_dir():
                lines.append(f"DIR  {entry.name}")
            else:
                lines.append(f"FILE {entry.name} ({entry.stat().st_size} bytes)")
        except OSError:
            lines.append(f"???? {entry.name}")
    return "\n".join(lines) or "(empty directory)"


def search_files(
    root: Path,
    pattern: str,
    include: str | None = None,
    max_results: int = 50,
    max_file_size: int = 100_000,
) -> str:
    """Case-insensitive regex search over workspace text files."""
    try:
        regex = re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise ValidationError(f"Invalid regex {pattern!r}: {e}") from e

    results: list[str] = []
    for file_path in iter_source_files(root):
        if include and not fnmatch.fnmatch(file_path.name.lower(), include.lower()):
            continue
        try:
            if file_path.stat().st_size > max_file_size:
                continue
            text = file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        rel = file_path.relative_to(root).as_posix()
        for lineno, line in enumerate(_split_lines(text), 1):
            if regex.search(line):
                results.append(f"{rel}:{lineno}: {line.strip()}")
                if len(results) >= max_results:
                    return "\n".join(results)
    return "\n".join(results) if results else f'No matches found for "{pattern}".'


def delete_file(path: Path, display: str) -> str:
    if not path.exists():
        raise NotFoundError(f"File not found: {display}")
    if path.is_dir():
        raise ValidationError(f"{display} is a directory; delete_file only removes files")
    path.unlink()
    return f"Deleted: {display}"


def create_directory(path: Path, display: str) -> str:
    path.mkdir(parents=True, exist_ok=True)
    return f"Created directory: {display}"


def build_manifest(root: Path, max_files: int = 2000) -> str:
    """Markdown file list of the workspace for the agent's project context."""
    files: list[str] = []
    truncated = False
    for file_path in iter_source_files(root):
        if len(files) >= max_files:
            truncated = True
            break
        files.append(file_path.relative_to(root).as_posix())

    manifest = f"## PROJECT MANIFEST\n\n### Root: {root}\n\n#### Directory Structure (File List):\n"
    manifest += "\n".join(f"- {f}" for f in files)
    if truncated:
        manifest += f"\n(listing capped at {max_files} files)"
    manifest += "\n\n(Use read_file to access full contents)\n"
    logger.debug(f"Built manifest for {root}: {len(files)} files")
    return manifest
