from __future__ import annotations

from ..store import ScoredChunk
from .tool_defs import InvalidToolCall, ToolInvocation


def summarize_invocation(invocation: ToolInvocation | InvalidToolCall) -> str:
    """One-line, human-readable description of a tool call for progress events."""
    tool = invocation.tool
    if isinstance(invocation, InvalidToolCall):
        return f"Invalid call: {tool}"
    if tool == "read_file":
        return f"Reading {invocation.path}"
    if tool == "write_file":
        return f"Writing {invocation.path}"
    if tool == "edit_file":
        return f"Editing {invocation.path} ({len(invocation.edits)} edits)"
    if tool == "replace_lines":
        return f"Replacing lines {invocation.start_line}-{invocation.end_line} in {invocation.path}"
    if tool == "insert_code":
        return f"Inserting code after line {invocation.line} in {invocation.path}"
    if tool == "list_directory":
        return f"Listing {invocation.path or 'project root'}"
    if tool == "search_files":
        suffix = f" in {invocation.include}" if invocation.include else ""
        return f'Searching for "{invocation.pattern}"{suffix}'
    if tool == "run_command":
        return f"Running: {invocation.command}"
    if tool == "create_directory":
        return f"Creating directory {invocation.path}"
    if tool == "delete_file":
        return f"Deleting {invocation.path}"
    if tool == "semantic_search":
        return f'Searching semantically for "{invocation.query}"'
    if tool == "get_blast_radius":
        return f"Calculating blast radius for {invocation.path}"
    if tool == "apply_diffs":
        return f"Applying diffs to {len(invocation.changes)} files"
    if tool == "validate_project":
        return "Performing project-wide validation"
    if tool == "run_tests":
        return "Running test suite"
    return tool


def truncate_result(text: str, max_chars: int = 15000) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + f"\n... (truncated, {len(text)} chars total)"


def preview(text: str, max_chars: int = 500) -> str:
    return text[:max_chars]


def format_search_results(results: list[ScoredChunk]) -> str:
    if not results:
        return "No relevant code found."
    return "\n\n".join(
        f"--- {r.path}:{r.start_line}-{r.end_line} (score {r.score:.3f}) ---\n{r.text}"
        for r in results
    )


def format_blast_radius(display: str, affected: list[str]) -> str:
    if not affected:
        return f"No files depend on {display}."
    return f"Files affected by changing {display}:\n" + "\n".join(f"- {p}" for p in affected)
