from __future__ import annotations

import logging
from typing import Optional

from ..backend import ModelBackend, ProviderConfig
from ..config import Config, get_config
from ..workspace import Workspace
from .executors import ToolExecutor
from .formatters import preview, summarize_invocation, truncate_result
from .models import AgentSession, AgentStep, StepCallback, StepReporter, TaskResult
from .parser import parse_tool_call
from .prompts import NEXT_STEP_SUFFIX, STALL_CORRECTION, build_system_message, is_stalling

logger = logging.getLogger("codewright.agent")


class AgentLoop:
    """Think-act-observe loop that drives one task at a time to completion."""

    def __init__(
        self,
        backend: ModelBackend,
        executor: ToolExecutor,
        workspace: Workspace | None = None,
        config: Config | None = None,
    ) -> None:
        self.backend = backend
        self.executor = executor
        self.workspace = workspace if workspace is not None else executor.workspace
        self.cfg = config or get_config()
        self.session = AgentSession()

    def reset(self) -> None:
        self.session.reset()
        logger.info("Agent session reset")

    def _system_message(self, active_file: Optional[str]) -> dict[str, str]:
        status = self.workspace.project_status(active_file) if self.workspace is not None else None
        return {"role": "system", "content": build_system_message(status)}

    async def run_task(
        self,
        task: str,
        provider: Optional[str] = None,
        provider_config: Optional[ProviderConfig] = None,
        on_event: Optional[StepCallback] = None,
        active_file: Optional[str] = None,
    ) -> TaskResult:
        """Run ``task`` until the model answers without a tool call or the ceiling is hit.

        BackendError propagates and ends the task.
        """
        reporter = StepReporter(on_event)
        max_iterations = self.cfg.agent_max_iterations
        history = list(self.session.messages)
        turns: list[dict[str, str]] = [{"role": "user", "content": task}]
        steps: list[AgentStep] = []
        corrections = 0
        last_answer = ""

        logger.info(f"Task started ({len(history)} prior messages): {task[:200]}")

        for iteration in range(1, max_iterations + 1):
            logger.debug(f"[ITERATION {iteration}/{max_iterations}]")
            # The preamble is rebuilt every turn so the manifest reflects earlier edits
            messages = [self._system_message(active_file), *history, *turns]
            response = await self.backend.call(messages, provider, provider_config)
            last_answer = response

            invocation = parse_tool_call(response)
            if invocation is None:
                if is_stalling(response):
                    corrections += 1
                    logger.warning(f"Stalling detected at iteration {iteration}, forcing tool usage")
                    turns.append({"role": "assistant", "content": response})
                    turns.append({"role": "user", "content": STALL_CORRECTION})
                    continue

                self.session.add_message("user", task)
                self.session.add_message("assistant", response)
                logger.info(f"Task finished at iteration {iteration} with a text response")
                await reporter.flush()
                return TaskResult(
                    final_response=response,
                    steps=steps,
                    iterations=iteration,
                    corrections=corrections,
                )

            step = AgentStep(
                tool=invocation.tool,
                status="running",
                summary=summarize_invocation(invocation),
                iteration=iteration,
            )
            steps.append(step)
            reporter.emit(step)
            turns.append({"role": "assistant", "content": response})

            observation = await self.executor.execute(invocation, reporter.emit, iteration)
            observation = truncate_result(observation, self.cfg.tool_result_max_chars)

            step.status = "done"
            step.result = preview(observation, self.cfg.step_preview_chars)
            reporter.emit(step)

            turns.append({
                "role": "user",
                "content": f"[Tool Result: {invocation.tool}]\n{observation}\n\n{NEXT_STEP_SUFFIX}",
            })

        logger.warning(f"Iteration ceiling ({max_iterations}) reached without a final answer")
        self.session.add_message("user", task)
        self.session.add_message("assistant", last_answer)
        await reporter.flush()
        return TaskResult(
            final_response=last_answer,
            steps=steps,
            iterations=max_iterations,
            corrections=corrections,
            completed=False,
        )
