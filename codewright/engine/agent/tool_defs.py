"""Tool invocation models and their prompt descriptions.

Every tool call the model emits is validated into exactly one of these
models, discriminated on the ``tool`` field.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class _Invocation(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class ReadFile(_Invocation):
    tool: Literal["read_file"]
    path: str


class WriteFile(_Invocation):
    tool: Literal["write_file"]
    path: str
    content: str


class Edit(_Invocation):
    search: str
    replacement: str = Field(validation_alias=AliasChoices("replace", "replacement"))


class EditFile(_Invocation):
    tool: Literal["edit_file"]
    path: str
    edits: list[Edit] = Field(min_length=1)


class ReplaceLines(_Invocation):
    tool: Literal["replace_lines"]
    path: str
    start_line: int = Field(ge=1, validation_alias=AliasChoices("startLine", "start_line"))
    end_line: int = Field(ge=1, validation_alias=AliasChoices("endLine", "end_line"))
    content: str


class InsertCode(_Invocation):
    tool: Literal["insert_code"]
    path: str
    line: int = Field(ge=0)
    content: str


class ListDirectory(_Invocation):
    tool: Literal["list_directory"]
    path: str = ""


class SearchFiles(_Invocation):
    tool: Literal["search_files"]
    pattern: str
    include: Optional[str] = None


class DeleteFile(_Invocation):
    tool: Literal["delete_file"]
    path: str


class CreateDirectory(_Invocation):
    tool: Literal["create_directory"]
    path: str


class RunCommand(_Invocation):
    tool: Literal["run_command"]
    command: str = Field(min_length=1)


class ValidateProject(_Invocation):
    tool: Literal["validate_project"]


class RunTests(_Invocation):
    tool: Literal["run_tests"]


class DiffChange(_Invocation):
    path: str
    diff: str


class ApplyDiffs(_Invocation):
    tool: Literal["apply_diffs"]
    changes: list[DiffChange] = Field(min_length=1)


class GetBlastRadius(_Invocation):
    tool: Literal["get_blast_radius"]
    path: str
    depth: Optional[int] = Field(default=None, ge=0)


class SemanticSearch(_Invocation):
    tool: Literal["semantic_search"]
    query: str
    limit: Optional[int] = Field(default=None, ge=1)


ToolInvocation = Annotated[
    Union[
        ReadFile, WriteFile, EditFile, ReplaceLines, InsertCode, ListDirectory,
        SearchFiles, DeleteFile, CreateDirectory, RunCommand, ValidateProject,
        RunTests, ApplyDiffs, GetBlastRadius, SemanticSearch,
    ],
    Field(discriminator="tool"),
]


class InvalidToolCall(BaseModel):
    """A tool call that named an unknown tool or had malformed parameters."""

    tool: str
    error: str
    raw: dict[str, Any] = Field(default_factory=dict)


TOOL_KINDS = (
    "semantic_search", "apply_diffs", "validate_project", "run_tests",
    "get_blast_radius", "read_file", "replace_lines", "insert_code",
    "write_file", "edit_file", "list_directory", "search_files",
    "run_command", "create_directory", "delete_file",
)

# Tools after which the workspace manifest must be rebuilt
MUTATING_TOOLS = frozenset({
    "write_file", "edit_file", "replace_lines", "insert_code", "delete_file",
    "create_directory", "apply_diffs", "run_command",
})


def get_tool_descriptions() -> str:
    """Tool reference embedded in the system prompt."""
    return "\n".join([
        '- semantic_search: find code by meaning. {"tool": "semantic_search", "query": "where are sessions saved", "limit": 5}',
        '- get_blast_radius: files that import a file, transitively. {"tool": "get_blast_radius", "path": "pkg/models.py", "depth": 3}',
        '- list_directory: one level of a directory. {"tool": "list_directory", "path": "src"}',
        '- search_files: regex search, case-insensitive. {"tool": "search_files", "pattern": "def main", "include": "*.py"}',
        '- read_file: file content with line numbers. {"tool": "read_file", "path": "app.py"}',
        '- apply_diffs: atomic search/replace across files (preferred for edits). '
        '{"tool": "apply_diffs", "changes": [{"path": "app.py", "diff": "<<<< SEARCH\\nold\\n====\\nnew\\n>>>> REPLACE"}]}',
        '- edit_file: exact search/replace in one file. {"tool": "edit_file", "path": "app.py", "edits": [{"search": "old", "replace": "new"}]}',
        '- replace_lines: replace an inclusive line range. {"tool": "replace_lines", "path": "app.py", "startLine": 3, "endLine": 5, "content": "..."}',
        '- insert_code: insert after a line (0 = top). {"tool": "insert_code", "path": "app.py", "line": 10, "content": "..."}',
        '- write_file: create or overwrite a file. {"tool": "write_file", "path": "app.py", "content": "..."}',
        '- create_directory: {"tool": "create_directory", "path": "pkg/sub"}',
        '- delete_file: {"tool": "delete_file", "path": "old.py"}',
        '- run_command: shell command in the project root, needs user approval. {"tool": "run_command", "command": "git status"}',
        '- validate_project: run the project validation command. {"tool": "validate_project"}',
        '- run_tests: run the project test suite. {"tool": "run_tests"}',
    ])
