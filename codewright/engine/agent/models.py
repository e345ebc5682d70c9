from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger("codewright.agent")

StepCallback = Callable[["AgentStep"], Union[None, Awaitable[None]]]


@dataclass
class AgentStep:
    tool: str
    status: str  # "running", "awaiting_permission", "done"
    summary: str
    result: Optional[str] = None
    iteration: Optional[int] = None
    command: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class TaskResult:
    final_response: str
    steps: list[AgentStep] = field(default_factory=list)
    iterations: int = 0
    corrections: int = 0
    completed: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "final_response": self.final_response,
            "steps": [s.to_dict() for s in self.steps],
            "iterations": self.iterations,
            "corrections": self.corrections,
            "completed": self.completed,
        }


@dataclass
class AgentSession:
    """Conversation carried across tasks until ``reset``."""

    messages: list[dict[str, str]] = field(default_factory=list)

    def add_message(self, role: str, content: str) -> None:
        self.messages.append({"role": role, "content": content})

    def reset(self) -> None:
        self.messages.clear()

    def __len__(self) -> int:
        return len(self.messages)


class StepReporter:
    """Delivers progress events without ever blocking or failing the agent loop.

    Events are scheduled with ``loop.call_soon``; coroutine subscribers run as
    their own tasks.
    """

    def __init__(self, callback: Optional[StepCallback] = None) -> None:
        self.callback = callback
        self._tasks: set[asyncio.Task] = set()

    def emit(self, step: AgentStep) -> None:
        if self.callback is None:
            return
        asyncio.get_running_loop().call_soon(self._deliver, replace(step))

    def _deliver(self, step: AgentStep) -> None:
        try:
            outcome = self.callback(step)
        except Exception as e:
            logger.warning(f"Step subscriber raised: {e}")
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Step subscriber raised: {task.exception()}")

    async def flush(self) -> None:
        """Let already-scheduled deliveries run. Does not wait on async subscribers."""
        await asyncio.sleep(0)
