"""Claude CLI backend - spawns ``claude -p`` and parses its stream-json stdout.

The CLI runs the MCP tools itself.  Its echoed tool results are matched back
to the tool blocks of the turn that requested them, so the loop sees the same
events and tool outputs it would get from the API backend.
"""

import asyncio
import os
import time
from collections import deque
from typing import AsyncIterator, Sequence

from kg_chatbot.cancellation import cancel_task, wait_or_abort
from kg_chatbot.conversation import Turn, format_prompt
from kg_chatbot.exceptions import CLIProcessError, ToolExecutionError
from kg_chatbot.llm import ModelSession, ToolCall
from kg_chatbot.llm.events import DONE, ModelEvent, ToolResultEchoed, TurnFinished
from kg_chatbot.llm.normalizer import CliEventNormalizer
from kg_chatbot.logging import get_logger

log = get_logger(__name__)

# stream-json lines carry whole tool results
_STDOUT_LIMIT = 16 * 1024 * 1024


def _starts_next_turn(event: dict | None) -> bool:
    """True for lines showing the CLI has moved past the tool results of a turn."""
    if event is None:
        return False
    if event.get("type") == "result":
        return True
    inner = event.get("event") if event.get("type") == "stream_event" else None
    return isinstance(inner, dict) and inner.get("type") == "message_start"


class ClaudeCliSession(ModelSession):
    """One ``claude -p`` subprocess per request."""

    def __init__(
        self,
        command: str = "claude",
        system_prompt: str = "",
        mcp_config_path: str = "",
        allowed_tools: Sequence[str] = (),
        extra_args: Sequence[str] = (),
        terminate_grace_seconds: float = 5.0,
    ):
        self.command = command
        self.system_prompt = system_prompt
        self.mcp_config_path = mcp_config_path
        self.allowed_tools = list(allowed_tools)
        self.extra_args = list(extra_args)
        self.terminate_grace_seconds = terminate_grace_seconds

        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._normalizer: CliEventNormalizer | None = None
        self._results: dict[str, ToolResultEchoed] = {}
        self._backlog: deque[str] = deque()
        self._started_at = 0.0

    def build_args(self) -> list[str]:
        """Command line arguments passed to the CLI."""
        args = [
            "-p",
            "--output-format", "stream-json",
            "--include-partial-messages",
            "--verbose",
        ]
        if self.system_prompt:
            args += ["--system-prompt", self.system_prompt]
        if self.mcp_config_path:
            args += ["--mcp-config", self.mcp_config_path]
        if self.allowed_tools:
            args += ["--allowedTools", ",".join(self.allowed_tools)]
        return args + self.extra_args

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started_at) * 1000)

    async def _spawn(self, prompt: str) -> None:
        # A nested CLI refuses to start when it sees its parent's marker.
        env = {key: value for key, value in os.environ.items() if key != "CLAUDECODE"}

        log.info("Spawning claude", command=self.command, prompt_chars=len(prompt))
        self._started_at = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                self.command,
                *self.build_args(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=_STDOUT_LIMIT,
            )
        except OSError as e:
            raise CLIProcessError(f"Failed to start {self.command}: {e}") from e

        self._process = process
        self._stderr_task = asyncio.create_task(self._log_stderr(process.stderr))

        process.stdin.write(prompt.encode("utf-8"))
        try:
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            # The exit status is reported once stdout closes.
            log.warning("claude closed stdin early", error=str(e))
        finally:
            process.stdin.close()

    async def _log_stderr(self, stream: asyncio.StreamReader) -> None:
        async for raw in stream:
            text = raw.decode("utf-8", errors="replace").strip()
            if text:
                log.warning("claude stderr", line=text)

    async def _read_line(self, abort_event: asyncio.Event | None) -> str | None:
        if self._backlog:
            return self._backlog.popleft()
        raw = await wait_or_abort(self._process.stdout.readline(), abort_event)
        if not raw:
            return None
        return raw.decode("utf-8", errors="replace")

    async def _check_exit(self, abort_event: asyncio.Event | None) -> None:
        code = await wait_or_abort(self._process.wait(), abort_event)
        log.info("claude exited", code=code, elapsed_ms=self._elapsed_ms())
        if code != 0:
            raise CLIProcessError(f"claude exited with code {code}", exit_code=code)

    async def stream_turn(
        self,
        turns: Sequence[Turn],
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[ModelEvent]:
        # The CLI keeps its own transcript; later turns resume reading stdout.
        if self._process is None:
            await self._spawn(format_prompt(turns))

        normalizer = CliEventNormalizer()
        self._normalizer = normalizer
        self._results = {}

        while True:
            line = await self._read_line(abort_event)
            if line is None:
                await self._check_exit(abort_event)
                yield TurnFinished(DONE)
                return
            for event in normalizer.feed(line):
                if isinstance(event, ToolResultEchoed):
                    self._results[event.block_id] = event
                    continue
                if event == TurnFinished(DONE):
                    # ``result`` is the last line; the exit status decides the turn.
                    await self._check_exit(abort_event)
                yield event
                if isinstance(event, TurnFinished):
                    return

    async def call_tool(self, call: ToolCall, abort_event: asyncio.Event | None = None) -> str:
        if self._normalizer is None:
            raise ToolExecutionError(call.name, "no turn in progress")

        while call.call_id not in self._results:
            line = await self._read_line(abort_event)
            if line is None:
                raise ToolExecutionError(call.name, "claude exited before reporting a result")
            event = CliEventNormalizer.parse_line(line)
            if _starts_next_turn(event):
                self._backlog.append(line)
                raise ToolExecutionError(call.name, "claude reported no result")
            for echoed in self._normalizer.feed(line):
                if isinstance(echoed, ToolResultEchoed):
                    self._results[echoed.block_id] = echoed

        echoed = self._results.pop(call.call_id)
        if echoed.is_error:
            raise ToolExecutionError(call.name, echoed.output or "tool reported an error")
        return echoed.output

    async def aclose(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            log.info("Terminating claude", pid=process.pid, elapsed_ms=self._elapsed_ms())
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self.terminate_grace_seconds)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        await cancel_task(self._stderr_task)
        self._stderr_task = None
