"""Tests for the agent core: tool-call parsing, stalling policy, the loop and the executor."""

import asyncio
import dataclasses
import json
import os
import tempfile
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from codewright.engine.agent import AgentLoop, AgentStep, InvalidToolCall, ToolExecutor, parse_tool_call
from codewright.engine.agent.prompts import STALL_CORRECTION, is_stalling
from codewright.engine.agent.tool_defs import EditFile, ListDirectory, ReadFile, ReplaceLines, WriteFile
from codewright.engine.commands import ApprovalGate
from codewright.engine.errors import BackendError
from codewright.engine.workspace import Workspace


# ═══════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def project(tmp_path):
    (tmp_path / "a.py").write_text("from . import b\n\n\ndef run():\n    return b.VALUE\n")
    (tmp_path / "b.py").write_text("VALUE = 1\n")
    return tmp_path


@pytest.fixture
def workspace(project, cfg):
    ws = Workspace(project, cfg)
    asyncio.run(ws.open())
    return ws


@pytest.fixture
def executor(workspace, cfg):
    return ToolExecutor(workspace, approvals=ApprovalGate(), config=cfg)


def make_agent(responses, workspace, cfg):
    backend = MagicMock()
    backend.call = AsyncMock(side_effect=list(responses))
    executor = ToolExecutor(workspace, approvals=ApprovalGate(), config=cfg)
    return AgentLoop(backend, executor, workspace, cfg), backend


def run(executor, text):
    return asyncio.run(executor.execute(parse_tool_call(text)))


# ═══════════════════════════════════════════════════════════════
# Tool-call parsing
# ═══════════════════════════════════════════════════════════════

class TestParseToolCall:
    """Tests for parse_tool_call on free-form model output."""

    def test_extracts_call_surrounded_by_prose(self):
        inv = parse_tool_call('I will fix this. {"tool":"read_file","path":"a.ts"} done.')
        assert isinstance(inv, ReadFile)
        assert inv.path == "a.ts"

    def test_plain_text_is_not_a_call(self):
        assert parse_tool_call("The refactor is complete.") is None
        assert parse_tool_call("") is None
        assert parse_tool_call(None) is None

    def test_object_without_tool_field(self):
        assert parse_tool_call('Result: {"path": "x.py", "ok": true}') is None

    def test_unclosed_object(self):
        assert parse_tool_call('{"tool": "read_file", "path": ') is None

    def test_unknown_tool_lists_valid_kinds(self):
        inv = parse_tool_call('{"tool": "frobnicate", "path": "x"}')
        assert isinstance(inv, InvalidToolCall)
        assert inv.tool == "frobnicate"
        assert "Available tools" in inv.error
        assert "read_file" in inv.error

    def test_missing_parameter(self):
        inv = parse_tool_call('{"tool": "write_file", "path": "x.py"}')
        assert isinstance(inv, InvalidToolCall)
        assert "content" in inv.error

    def test_empty_edits_rejected(self):
        inv = parse_tool_call('{"tool": "edit_file", "path": "x.py", "edits": []}')
        assert isinstance(inv, InvalidToolCall)

    def test_camel_case_line_aliases(self):
        inv = parse_tool_call(
            '{"tool": "replace_lines", "path": "x.py", "startLine": 2, "endLine": 4, "content": "y"}'
        )
        assert isinstance(inv, ReplaceLines)
        assert (inv.start_line, inv.end_line) == (2, 4)

    def test_edit_replace_alias(self):
        inv = parse_tool_call(
            '{"tool": "edit_file", "path": "x.py", "edits": [{"search": "a", "replace": "b"}]}'
        )
        assert isinstance(inv, EditFile)
        assert inv.edits[0].replacement == "b"

    def test_scan_when_outer_span_is_not_json(self):
        text = 'Context {"note": 1} and then {"tool": "list_directory", "path": "src"} ok'
        inv = parse_tool_call(text)
        assert isinstance(inv, ListDirectory)
        assert inv.path == "src"

    def test_scan_keeps_braces_inside_strings(self):
        text = 'Writing: {"tool": "write_file", "path": "a.py", "content": "d = {}"} then {x}'
        inv = parse_tool_call(text)
        assert isinstance(inv, WriteFile)
        assert inv.content == "d = {}"


# ═══════════════════════════════════════════════════════════════
# Stalling policy
# ═══════════════════════════════════════════════════════════════

class TestStalling:

    def test_question_is_stalling(self):
        assert is_stalling("Could you share the contents of main.py?") is True

    def test_instructions_are_stalling(self):
        assert is_stalling("You should open the file and change the import manually.") is True
        assert is_stalling("Here is the fix:\n```python\nx = 1\n```") is True

    def test_declining_is_stalling(self):
        assert is_stalling("I don't have access to your files so I cannot do that.") is True

    def test_final_summary_is_not_stalling(self):
        assert is_stalling("Renamed load_config to read_config and updated both callers.") is False

    def test_short_replies_are_ignored(self):
        assert is_stalling("ok?") is False


# ═══════════════════════════════════════════════════════════════
# Agent loop
# ═══════════════════════════════════════════════════════════════

class TestAgentLoop:
    """Tests for AgentLoop.run_task iteration and conversation handling."""

    def test_text_answer_ends_task(self, workspace, cfg):
        agent, backend = make_agent(["Nothing needed changing."], workspace, cfg)
        result = asyncio.run(agent.run_task("check the project"))
        assert result.completed is True
        assert result.iterations == 1
        assert result.final_response == "Nothing needed changing."
        assert agent.session.messages == [
            {"role": "user", "content": "check the project"},
            {"role": "assistant", "content": "Nothing needed changing."},
        ]

    def test_system_preamble_carries_project_status(self, workspace, cfg):
        agent, backend = make_agent(["Done with the task."], workspace, cfg)
        asyncio.run(agent.run_task("look around"))
        messages = backend.call.call_args_list[0].args[0]
        assert messages[0]["role"] == "system"
        assert "- a.py" in messages[0]["content"]
        assert "YOUR NEXT TURN MUST BE A TOOL CALL" in messages[0]["content"]
        assert messages[-1] == {"role": "user", "content": "look around"}

    def test_stalling_gets_exactly_one_correction(self, workspace, cfg):
        agent, backend = make_agent(
            ["Could you paste the file contents?", "Fixed the import in a.py."], workspace, cfg
        )
        result = asyncio.run(agent.run_task("fix the import"))
        assert result.iterations == 2
        assert result.corrections == 1
        assert result.final_response == "Fixed the import in a.py."

        second_call = backend.call.call_args_list[1].args[0]
        corrections = [m for m in second_call if m["content"] == STALL_CORRECTION]
        assert len(corrections) == 1
        assert second_call[-2] == {"role": "assistant", "content": "Could you paste the file contents?"}

    def test_tool_result_is_fed_back(self, workspace, cfg):
        agent, backend = make_agent(
            ['{"tool": "read_file", "path": "b.py"}', "b.py defines VALUE."], workspace, cfg
        )
        result = asyncio.run(agent.run_task("what is in b.py"))
        assert len(result.steps) == 1
        step = result.steps[0]
        assert step.tool == "read_file"
        assert step.status == "done"
        assert step.result.startswith("1: VALUE = 1")

        observation = backend.call.call_args_list[1].args[0][-1]
        assert observation["role"] == "user"
        assert observation["content"].startswith("[Tool Result: read_file]\n1: VALUE = 1")
        assert "[NEXT STEP:" in observation["content"]

    def test_tool_errors_do_not_end_the_task(self, workspace, cfg):
        agent, backend = make_agent(
            ['{"tool": "read_file", "path": "missing.py"}', "The file does not exist."], workspace, cfg
        )
        result = asyncio.run(agent.run_task("read missing.py"))
        assert result.completed is True
        observation = backend.call.call_args_list[1].args[0][-1]["content"]
        assert "ERROR (read_file): File not found: missing.py" in observation

    def test_iteration_ceiling(self, workspace, cfg):
        cfg = dataclasses.replace(cfg, agent_max_iterations=3)
        call = '{"tool": "list_directory", "path": ""}'
        agent, backend = make_agent([call] * 3, workspace, cfg)
        result = asyncio.run(agent.run_task("loop forever"))
        assert result.completed is False
        assert result.iterations == 3
        assert result.final_response == call
        assert backend.call.await_count == 3
        assert agent.session.messages[-1] == {"role": "assistant", "content": call}

    def test_long_observations_are_truncated(self, workspace, cfg, project):
        (project / "big.txt").write_text("x" * 5000)
        cfg = dataclasses.replace(cfg, tool_result_max_chars=100)
        agent, backend = make_agent(
            ['{"tool": "read_file", "path": "big.txt"}', "It is a large file."], workspace, cfg
        )
        asyncio.run(agent.run_task("read big.txt"))
        observation = backend.call.call_args_list[1].args[0][-1]["content"]
        assert "... (truncated, 5003 chars total)" in observation

    def test_step_events_are_delivered(self, workspace, cfg):
        agent, _ = make_agent(['{"tool": "read_file", "path": "a.py"}', "Read a.py."], workspace, cfg)
        events: list[AgentStep] = []
        asyncio.run(agent.run_task("read a.py", on_event=events.append))
        assert [e.status for e in events] == ["running", "done"]
        assert events[0].summary == "Reading a.py"
        assert events[0].iteration == 1

    def test_failing_subscribers_do_not_break_the_loop(self, workspace, cfg):
        agent, _ = make_agent(['{"tool": "read_file", "path": "a.py"}', "Read a.py."], workspace, cfg)

        def broken(step):
            raise RuntimeError("subscriber crashed")

        async def broken_async(step):
            raise RuntimeError("async subscriber crashed")

        assert asyncio.run(agent.run_task("read", on_event=broken)).completed is True
        agent, _ = make_agent(['{"tool": "read_file", "path": "a.py"}', "Read a.py."], workspace, cfg)
        assert asyncio.run(agent.run_task("read", on_event=broken_async)).completed is True

    def test_backend_error_ends_the_task(self, workspace, cfg):
        agent, backend = make_agent([], workspace, cfg)
        backend.call = AsyncMock(side_effect=BackendError("model unavailable", status=503))
        with pytest.raises(BackendError):
            asyncio.run(agent.run_task("anything"))
        assert agent.session.messages == []

    def test_history_carries_into_next_task_until_reset(self, workspace, cfg):
        agent, backend = make_agent(["First answer.", "Second answer."], workspace, cfg)
        asyncio.run(agent.run_task("first"))
        asyncio.run(agent.run_task("second"))
        second_call = backend.call.call_args_list[1].args[0]
        assert {"role": "assistant", "content": "First answer."} in second_call

        agent.reset()
        assert len(agent.session) == 0


# ═══════════════════════════════════════════════════════════════
# Tool executor
# ═══════════════════════════════════════════════════════════════

class TestToolExecutor:
    """Tests for ToolExecutor dispatch against a real temporary workspace."""

    def test_read_file_numbers_lines(self, executor):
        assert run(executor, '{"tool": "read_file", "path": "b.py"}') == "1: VALUE = 1\n2: "

    def test_read_binary_file_rejected(self, executor, project):
        (project / "blob.dat").write_bytes(b"abc\0def")
        result = run(executor, '{"tool": "read_file", "path": "blob.dat"}')
        assert result.startswith("ERROR (read_file):")
        assert "binary" in result

    def test_write_file_creates_parents(self, executor, project):
        result = run(executor, '{"tool": "write_file", "path": "pkg/new.py", "content": "x = 1\\ny = 2"}')
        assert result == "Wrote 2 lines to pkg/new.py"
        assert (project / "pkg" / "new.py").read_text() == "x = 1\ny = 2"

    def test_write_file_refreshes_graph(self, executor, workspace):
        run(executor, '{"tool": "write_file", "path": "c.py", "content": "import b\\n"}')
        node = workspace.graph.node("b.py")
        assert workspace.graph.resolve("c.py") in node.dependents

    def test_edit_file_replaces_first_occurrence(self, executor, project):
        (project / "e.py").write_text("x = 1\nx = 1\n")
        call = {"tool": "edit_file", "path": "e.py", "edits": [{"search": "x = 1", "replace": "x = 2"}]}
        assert run(executor, json.dumps(call)) == "Applied 1 edit(s) to e.py"
        assert (project / "e.py").read_text() == "x = 2\nx = 1\n"

    def test_edit_file_whitespace_mismatch(self, executor, project):
        (project / "e.py").write_text("def f():\n    return 1\n")
        call = {"tool": "edit_file", "path": "e.py", "edits": [{"search": "def f():\n  return 1", "replace": "z"}]}
        result = run(executor, json.dumps(call))
        assert "whitespace/indentation did not match exactly" in result

    def test_edit_file_not_found(self, executor, project):
        (project / "e.py").write_text("def f():\n    return 1\n")
        call = {"tool": "edit_file", "path": "e.py", "edits": [{"search": "def g():", "replace": "z"}]}
        result = run(executor, json.dumps(call))
        assert "could not find the following code block" in result

    def test_edit_file_aborts_without_writing(self, executor, project):
        (project / "e.py").write_text("a = 1\nb = 2\n")
        call = {
            "tool": "edit_file",
            "path": "e.py",
            "edits": [{"search": "a = 1", "replace": "a = 10"}, {"search": "c = 3", "replace": "c = 30"}],
        }
        assert run(executor, json.dumps(call)).startswith("ERROR (edit_file)")
        assert (project / "e.py").read_text() == "a = 1\nb = 2\n"

    def test_replace_lines_is_clamped(self, executor, project):
        (project / "r.py").write_text("one\ntwo\nthree")
        call = {"tool": "replace_lines", "path": "r.py", "startLine": 2, "endLine": 99, "content": "TWO"}
        run(executor, json.dumps(call))
        assert (project / "r.py").read_text() == "one\nTWO"

    def test_insert_code_at_top(self, executor, project):
        (project / "r.py").write_text("one\ntwo")
        run(executor, '{"tool": "insert_code", "path": "r.py", "line": 0, "content": "zero"}')
        assert (project / "r.py").read_text() == "zero\none\ntwo"

    def test_list_directory(self, executor, project):
        (project / "sub").mkdir()
        result = run(executor, '{"tool": "list_directory", "path": ""}')
        assert "FILE a.py (" in result
        assert "DIR  sub" in result

    def test_search_files_with_include(self, executor, project):
        (project / "notes.txt").write_text("VALUE in notes\n")
        result = run(executor, '{"tool": "search_files", "pattern": "value", "include": "*.py"}')
        assert "b.py:1: VALUE = 1" in result
        assert "notes.txt" not in result

    def test_search_files_invalid_regex(self, executor):
        result = run(executor, '{"tool": "search_files", "pattern": "("}')
        assert result.startswith("ERROR (search_files): Invalid regex")

    def test_delete_and_create_directory(self, executor, project):
        assert run(executor, '{"tool": "delete_file", "path": "b.py"}') == "Deleted: b.py"
        assert not (project / "b.py").exists()
        assert run(executor, '{"tool": "create_directory", "path": "x/y"}') == "Created directory: x/y"
        assert (project / "x" / "y").is_dir()

    def test_apply_diffs_absent_search_leaves_file_unchanged(self, executor, project):
        original = (project / "b.py").read_bytes()
        call = {
            "tool": "apply_diffs",
            "changes": [{"path": "b.py", "diff": "<<<< SEARCH\nVALUE = 2\n====\nVALUE = 3\n>>>> REPLACE"}],
        }
        result = run(executor, json.dumps(call))
        assert result.startswith("ERROR (apply_diffs):")
        assert "No changes were saved" in result
        assert (project / "b.py").read_bytes() == original

    def test_apply_diffs_without_blocks(self, executor):
        call = {"tool": "apply_diffs", "changes": [{"path": "b.py", "diff": "VALUE = 3"}]}
        assert "Failed to parse diff blocks" in run(executor, json.dumps(call))

    def test_apply_diffs_malformed_block_rejects_whole_call(self, executor, project):
        original = (project / "b.py").read_bytes()
        call = {
            "tool": "apply_diffs",
            "changes": [
                {"path": "c.py", "diff": "<<<< SEARCH\n====\nimport b\n>>>> REPLACE"},
                {
                    "path": "b.py",
                    "diff": (
                        "<<<< SEARCH\nVALUE = 1\n====\nVALUE = 10\n>>>> REPLACE\n"
                        "<<<< SEARCH\nVALUE = 10\n>>>> REPLACE"
                    ),
                },
            ],
        }
        result = run(executor, json.dumps(call))
        assert result.startswith("ERROR (apply_diffs): Failed to parse diff blocks for b.py (1 of 2 blocks parsed)")
        assert (project / "b.py").read_bytes() == original
        assert not (project / "c.py").exists()

    def test_apply_diffs_success(self, executor, project):
        call = {
            "tool": "apply_diffs",
            "changes": [
                {"path": "b.py", "diff": "<<<< SEARCH\nVALUE = 1\n====\nVALUE = 2\n>>>> REPLACE"},
                {"path": "c.py", "diff": "<<<< SEARCH\n====\nimport b\n>>>> REPLACE"},
            ],
        }
        assert run(executor, json.dumps(call)) == "Successfully applied diffs to 2 files."
        assert (project / "b.py").read_text() == "VALUE = 2\n"
        assert (project / "c.py").read_text() == "import b"

    def test_blast_radius_relative_import(self, executor):
        result = run(executor, '{"tool": "get_blast_radius", "path": "b.py", "depth": 1}')
        assert result == "Files affected by changing b.py:\n- a.py"

    def test_blast_radius_no_dependents(self, executor):
        assert run(executor, '{"tool": "get_blast_radius", "path": "a.py"}') == "No files depend on a.py."

    def test_semantic_search_without_index(self, executor):
        result = run(executor, '{"tool": "semantic_search", "query": "config"}')
        assert result.startswith("ERROR (semantic_search)")

    def test_validate_project_without_marker(self, executor):
        assert run(executor, '{"tool": "validate_project"}') == "No pyproject.toml found. Skipping validation."

    def test_unknown_tool(self, executor):
        result = run(executor, '{"tool": "frobnicate"}')
        assert result.startswith('ERROR (frobnicate): Unknown tool "frobnicate"')

    def test_run_command_denied(self, executor):
        steps = []

        async def scenario():
            task = asyncio.create_task(
                executor.execute(parse_tool_call('{"tool": "run_command", "command": "echo hi"}'), steps.append)
            )
            while executor.approvals.pending is None:
                await asyncio.sleep(0.01)
            assert executor.approvals.resolve(False) is True
            return await task

        assert asyncio.run(scenario()) == "Command denied by user."
        assert [s.status for s in steps] == ["awaiting_permission"]
        assert steps[0].command == "echo hi"

    def test_run_command_approved(self, executor):
        steps = []

        async def scenario():
            task = asyncio.create_task(
                executor.execute(parse_tool_call('{"tool": "run_command", "command": "echo hello"}'), steps.append)
            )
            while executor.approvals.pending is None:
                await asyncio.sleep(0.01)
            executor.approvals.resolve(True)
            return await task

        assert asyncio.run(scenario()) == "hello"
        assert [s.status for s in steps] == ["awaiting_permission", "running"]

    def test_backend_error_propagates(self, executor, workspace):
        workspace.index = MagicMock()
        workspace.index.search = AsyncMock(side_effect=BackendError("embed failed"))
        with pytest.raises(BackendError):
            run(executor, '{"tool": "semantic_search", "query": "x"}')


# ═══════════════════════════════════════════════════════════════
# Config
# ═══════════════════════════════════════════════════════════════

class TestConfig:
    """Tests for Config loading and defaults."""

    def test_default_config_values(self):
        from codewright.engine.config import DEFAULT_CONFIG, Config
        cfg = Config(**DEFAULT_CONFIG)
        assert cfg.agent_max_iterations == 20
        assert cfg.tool_result_max_chars == 15000
        assert cfg.command_timeout == 60.0
        assert cfg.command_max_output == 10 * 1024 * 1024
        assert cfg.blast_radius_depth == 3

    def test_config_load_from_file(self):
        from codewright.engine.config import Config
        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            json.dump({"ollama_model": "test-model", "not_a_key": 1}, f)
            f.flush()
            try:
                cfg = Config.load(config_path=f.name)
                assert cfg.ollama_model == "test-model"
                # Defaults still applied
                assert cfg.agent_max_iterations == 20
            finally:
                os.unlink(f.name)

    def test_config_env_override(self):
        from codewright.engine.config import Config
        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            json.dump({}, f)
            f.flush()
            try:
                env = {
                    "CODEWRIGHT_AGENT_MAX_ITERATIONS": "7",
                    "CODEWRIGHT_WATCH_ENABLED": "false",
                    "CODEWRIGHT_MODEL_TEMPERATURE": "0.5",
                }
                with patch.dict(os.environ, env):
                    cfg = Config.load(config_path=f.name)
                    assert cfg.agent_max_iterations == 7
                    assert cfg.watch_enabled is False
                    assert cfg.model_temperature == 0.5
            finally:
                os.unlink(f.name)

    def test_bad_env_value_is_ignored(self):
        from codewright.engine.config import Config
        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            json.dump({}, f)
            f.flush()
            try:
                with patch.dict(os.environ, {"CODEWRIGHT_PORT": "not-a-port"}):
                    assert Config.load(config_path=f.name).port == 3000
            finally:
                os.unlink(f.name)
