"""Agent package.

Public API:
    from codewright.engine.agent import AgentLoop, ToolExecutor
    from codewright.engine.agent import AgentStep, TaskResult, parse_tool_call

Internal layout:
    tool_defs.py  - pydantic invocation models, one per tool kind
    parser.py     - parse_tool_call (model text -> invocation)
    prompts.py    - system prompt, must-act directive, stalling check
    formatters.py - step summaries, truncation, result rendering
    models.py     - AgentSession, AgentStep, TaskResult, StepReporter
    executors.py  - ToolExecutor (dispatch table over all tools)
    loop.py       - AgentLoop (iteration, conversation state)
"""

from .executors import ToolExecutor
from .loop import AgentLoop
from .models import AgentSession, AgentStep, StepReporter, TaskResult
from .parser import parse_tool_call
from .tool_defs import InvalidToolCall, ToolInvocation

__all__ = [
    "AgentLoop",
    "AgentSession",
    "AgentStep",
    "InvalidToolCall",
    "StepReporter",
    "TaskResult",
    "ToolExecutor",
    "ToolInvocation",
    "parse_tool_call",
]
