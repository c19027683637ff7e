"""
Log watcher: feeds collected log lines to a watcher agent on every polling
cycle and reports the agent's diagnostic through an alert callback.

Delivery of alerts (SMS, voice, chat, ...) is up to the alert callback.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .agent import AgentContext
from .config import get_settings
from .errors import WatcherError
from .events import resolve
from .runtime import Runtime
from .tools import tool

logger = logging.getLogger("logwatch")

LINE_MARKER_PATTERN = r"^__LINE_\d+__$"
_LINE_MARKER = re.compile(r"^__LINE_(\d+)__$")

LineMarker = Annotated[str, Field(pattern=LINE_MARKER_PATTERN)]


class LogDiagnostic(BaseModel):
    """Your final diagnostic: a status and, when critical, up to three line markers of the worst entries."""

    status: Literal["critical", "warning", "normal"] = Field(
        description="Overall health of the logs: 'critical', 'warning' or 'normal'."
    )
    top_errors: Optional[List[LineMarker]] = Field(
        default=None,
        max_length=3,
        description=(
            "Up to three __LINE_<number>__ markers of the most critical entries, most severe first. "
            "Only present when status is 'critical'."
        ),
    )


@dataclass(frozen=True)
class AlertDiagnostic:
    raw: LogDiagnostic
    formatted: str


@dataclass(frozen=True)
class AlertEvent:
    watcher: str
    logs: List[str]
    diagnostic: AlertDiagnostic


AlertCallback = Callable[[AlertEvent], Union[None, Awaitable[None]]]

WATCHER_INSTRUCTIONS = """# Log Analysis Instructions

## Task
Analyze the provided log lines (at most {tail_amount}) and report a diagnostic by calling
the `provide_diagnostic` tool exactly once. Judge severity from what each message
describes; the log level is only a hint and may be wrong.

## Log Format
Each line is formatted as `__LINE_<line_number>__:<log_content>`.

## Status
- `critical`: actual failures: crashes, unhandled exceptions, lost database connections,
  data loss or corruption, security breaches, outages, resource exhaustion.
- `warning`: potential issues: degraded performance, timeouts that were retried,
  unusual traffic, resources close to their limits.
- `normal`: routine operations and successful completions.

## top_errors
Only when status is `critical`: up to 3 line markers, most severe first. Index 0 must be
the issue that justifies the critical status. Never list routine or merely slow entries.
"""


def parse_delay(delay: Union[str, int]) -> int:
    """
    Convert a polling delay to milliseconds.

    Accepts a number of milliseconds or "<number>:<ms|seconds|minutes>".
    """
    if isinstance(delay, int):
        return delay
    value_str, _, unit = str(delay).partition(":")
    try:
        value = int(value_str)
    except ValueError as exc:
        raise WatcherError(f"Invalid polling delay: {delay!r}") from exc
    if not unit:
        return value
    if unit == "ms":
        return value
    if unit == "seconds":
        return value * 1000
    if unit == "minutes":
        return value * 60 * 1000
    raise WatcherError(f"Invalid time unit: {unit}")


def format_diagnostic(diagnostic: LogDiagnostic, lines: List[str], watcher: str) -> AlertDiagnostic:
    """Human-readable diagnostic, resolving line markers against the analysed lines."""
    formatted = f"Status: ** {diagnostic.status} **"
    if diagnostic.top_errors:
        error_lines = []
        for marker in diagnostic.top_errors:
            match = _LINE_MARKER.match(marker)
            if not match:
                error_lines.append(marker)
                continue
            line_number = int(match.group(1))
            index = line_number - 1
            if 0 <= index < len(lines):
                error_lines.append(f"{line_number}| {lines[index]}")
            else:
                error_lines.append(f"{line_number}: (log not found)")
        formatted += "\nTop Errors:\n" + "\n".join(error_lines)
    return AlertDiagnostic(raw=diagnostic, formatted=f"-- Diagnostic for namespace {watcher} --\n{formatted}")


class LogWatcher:
    def __init__(
        self,
        name: str,
        *,
        alert: AlertCallback,
        runtime: Optional[Runtime] = None,
        tail_amount: int = 10,
        poll_delay: Union[str, int] = "10:minutes",
        model_settings: Optional[Dict[str, Any]] = None,
        max_step: int = 10,
    ) -> None:
        if tail_amount <= 0:
            raise WatcherError(f"tail_amount must be greater than 0. Received '{tail_amount}'")
        self.name = name
        self.tail_amount = tail_amount
        self.poll_delay_ms = parse_delay(poll_delay)
        self.model_settings = dict(model_settings or {})
        self.max_step = max_step
        self._alert = alert
        self._runtime = runtime or Runtime()
        self._logs: List[str] = []
        self._cursor = 0
        self._last_diagnostic: Optional[AlertDiagnostic] = None
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, alert: AlertCallback, runtime: Optional[Runtime] = None) -> "LogWatcher":
        settings = get_settings()
        model_settings: Dict[str, Any] = {"stream": settings.stream}
        if settings.model:
            model_settings["model"] = settings.model
        return cls(
            settings.watcher_name,
            alert=alert,
            runtime=runtime,
            tail_amount=settings.tail_amount,
            poll_delay=settings.poll_delay,
            model_settings=model_settings,
            max_step=settings.max_step,
        )

    @property
    def logs(self) -> List[str]:
        return list(self._logs)

    @property
    def last_polling_index(self) -> int:
        return self._cursor

    @property
    def pending_lines(self) -> int:
        return len(self._logs) - self._cursor

    @property
    def last_diagnostic(self) -> Optional[AlertDiagnostic]:
        return self._last_diagnostic

    @property
    def polling(self) -> str:
        return "activated" if self._task is not None and not self._task.done() else "paused"

    def feed_log(self, log: Union[str, List[str]]) -> int:
        """
        Queue log entries for analysis. Returns the number of lines added.

        A string is split into lines; a trailing newline does not queue an
        empty entry.
        """
        lines = log.splitlines() if isinstance(log, str) else list(log)
        self._logs.extend(lines)
        return len(lines)

    async def poll(self) -> Optional[AlertDiagnostic]:
        """Run one polling cycle over the next `tail_amount` unseen lines."""
        if self._cursor >= len(self._logs):
            logger.info("watcher=%s no logs fed, waiting", self.name)
            return None

        lines = self._logs[self._cursor:self._cursor + self.tail_amount]
        self._cursor += len(lines)
        formatted_logs = "\n".join(f"__LINE_{index}__:{line}" for index, line in enumerate(lines, start=1))
        produced: List[AlertDiagnostic] = []

        async def provide_diagnostic(params: LogDiagnostic, context: AgentContext) -> str:
            diagnostic = format_diagnostic(params, lines, self.name)
            produced.append(diagnostic)
            if params.status != "normal":
                logger.warning("watcher=%s status=%s", self.name, params.status)
            await resolve(self._alert(AlertEvent(watcher=self.name, logs=lines, diagnostic=diagnostic)))
            context.stop()
            return "success"

        agent = self._runtime.agent(
            name="Log watcher",
            instructions=WATCHER_INSTRUCTIONS.format(tail_amount=self.tail_amount),
            tools=[
                tool(
                    "provide_diagnostic",
                    "provide your final and complete diagnostic with the informations provided and following the instructions",
                    provide_diagnostic,
                    schema=LogDiagnostic,
                )
            ],
            model_settings={**self.model_settings, "tool_choice": "required"},
            step_options={"max_step": self.max_step},
        )
        logger.info("watcher=%s polling lines=%s cursor=%s", self.name, len(lines), self._cursor)
        await agent.send_user_message(f"Provide your diagnostic for the following logs:\n{formatted_logs}")

        if produced:
            self._last_diagnostic = produced[-1]
            return produced[-1]
        logger.warning("watcher=%s agent finished without a diagnostic", self.name)
        return None

    def start(self) -> None:
        """Start polling every `poll_delay_ms` on the running event loop."""
        if self.polling == "activated":
            return
        self._task = asyncio.get_running_loop().create_task(self._poll_forever())

    def pause(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def aclose(self) -> None:
        """Stop polling and close the runtime's transport."""
        self.pause()
        await self._runtime.aclose()

    async def _poll_forever(self) -> None:
        while True:
            await asyncio.sleep(self.poll_delay_ms / 1000)
            try:
                await self.poll()
            except Exception:
                logger.exception("watcher=%s polling cycle failed", self.name)
