"""Shell command execution behind a user approval gate."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .config import Config, get_config
from .errors import ApprovalBusyError

logger = logging.getLogger("codewright.commands")

TerminalSink = Callable[[str], None]

# Seconds to wait for pipes to close after a timed-out command is killed
_DRAIN_TIMEOUT = 5.0


class ApprovalGate:
    """Single-slot approval channel.

    ``request`` suspends until ``resolve`` delivers exactly one decision. Only
    one request may be pending at a time.
    """

    def __init__(self, auto_approve: bool = False) -> None:
        self.auto_approve = auto_approve
        self._future: asyncio.Future[bool] | None = None
        self._command: str | None = None

    @property
    def pending(self) -> str | None:
        """The command awaiting a decision, if any."""
        if self._future is None or self._future.done():
            return None
        return self._command

    async def request(self, command: str) -> bool:
        if self.auto_approve:
            return True
        if self.pending is not None:
            raise ApprovalBusyError(
                f"Another command is already awaiting approval: {self._command}"
            )

        self._future = asyncio.get_running_loop().create_future()
        self._command = command
        logger.info(f"Awaiting approval for command: {command}")
        try:
            approved = await self._future
        finally:
            self._future = None
            self._command = None
        logger.info(f"Command {'approved' if approved else 'denied'}: {command}")
        return approved

    def resolve(self, approved: bool) -> bool:
        """Deliver the decision. Returns False when nothing is pending."""
        if self._future is None or self._future.done():
            return False
        self._future.set_result(bool(approved))
        return True


@dataclass
class CommandResult:
    command: str
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def render(self) -> str:
        if self.timed_out:
            partial = (self.stdout + ("\nSTDERR: " + self.stderr if self.stderr else "")).strip()
            return f"Command timed out: {self.command}\n{partial}".strip()
        if self.success:
            output = (self.stdout + ("\nSTDERR: " + self.stderr if self.stderr else "")).strip()
            return output or "(command completed with no output)"
        return (
            f"Command exited with error (exit code {self.exit_code}):\n"
            f"{self.stdout}\n{self.stderr}"
        ).strip()


class CommandRunner:
    """Runs shell commands in the workspace and mirrors them to terminal sinks."""

    def __init__(self, config: Config | None = None) -> None:
        self.cfg = config or get_config()
        self._sinks: list[TerminalSink] = []

    def attach(self, sink: TerminalSink) -> None:
        self._sinks.append(sink)

    def detach(self, sink: TerminalSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    def _mirror(self, text: str) -> None:
        for sink in list(self._sinks):
            try:
                sink(text)
            except Exception as e:
                logger.warning(f"Terminal sink failed: {e}")

    async def run(self, command: str, cwd: Path, timeout: float | None = None) -> CommandResult:
        timeout = timeout or self.cfg.command_timeout
        limit = self.cfg.command_max_output
        self._mirror(f"\r\n# Executing agent command: {command}\r\n")

        # Own session, so a timeout can kill the shell and everything it started
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        communicate = asyncio.ensure_future(proc.communicate())
        try:
            stdout, stderr = await asyncio.wait_for(asyncio.shield(communicate), timeout=timeout)
            result = CommandResult(
                command=command,
                exit_code=proc.returncode,
                stdout=_decode(stdout, limit),
                stderr=_decode(stderr, limit),
            )
        except asyncio.TimeoutError:
            logger.warning(f"Command timed out after {timeout}s: {command}")
            _kill_group(proc)
            try:
                stdout, stderr = await asyncio.wait_for(communicate, timeout=_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"Output of timed-out command not drained: {command}")
                stdout, stderr = b"", b""
            result = CommandResult(
                command=command,
                exit_code=None,
                stdout=_decode(stdout, limit),
                stderr=_decode(stderr, limit),
                timed_out=True,
            )

        logger.info(f"Command finished (exit={result.exit_code}): {command}")
        self._mirror(result.render() + "\r\n")
        return result


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError as e:
        logger.warning(f"Cannot kill process group {proc.pid}: {e}")
        proc.kill()


def _decode(data: bytes | None, limit: int) -> str:
    data = data or b""
    text = data[:limit].decode(errors="replace")
    if len(data) > limit:
        text += f"\n... (output truncated at {limit} bytes)"
    return text
