"""
Scripted dialogue driver.

A dialogue is an ordered tuple of :class:`Step` objects. Each step lists
``Expect(pattern, action)`` pairs in priority order; the driver waits until
one pattern matches (or the step's time budget runs out) and fires exactly
one action. Steps are immutable data; all per-session state lives in
:class:`SessionContext`.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Type, Union

from .connection import AsyncConnection, MatchResult
from .exceptions import ProtocolTimeout, RemoteRejected, SessionIOError, SpkError
from .protocol.trace_recorder import TraceRecorder
from .protocol.utils import CRLF, format_line
from .utils.logging_utils import log_step_error, log_step_event

logger = logging.getLogger(__name__)


class NoTimeout:
    """Sentinel type for steps that may wait indefinitely."""

    _instance: Optional["NoTimeout"] = None

    def __new__(cls) -> "NoTimeout":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NO_TIMEOUT"


NO_TIMEOUT = NoTimeout()

StepTimeout = Union[None, float, NoTimeout]


@dataclass
class SessionContext:
    """Mutable state of one dialogue.

    ``params`` are caller-supplied values and ``captured`` the values taken
    from matched text; both are available to ``Send`` templates.
    """

    params: Dict[str, str] = field(default_factory=dict)
    captured: Dict[str, str] = field(default_factory=dict)
    default_timeout: float = 60.0
    timeout_override: Optional[float] = None
    step_index: int = 0
    step_name: str = ""
    reason: Optional[str] = None
    branch: Optional[str] = None

    def render(self, template: str) -> str:
        return template.format_map({**self.params, **self.captured})

    def timeout_for(self, step: "Step") -> Optional[float]:
        """Effective wait for ``step``; None means unbounded."""
        if self.timeout_override is not None:
            return self.timeout_override
        if step.timeout is None:
            return self.default_timeout
        if isinstance(step.timeout, NoTimeout):
            return None
        return step.timeout


class Action:
    """Base class for what happens when a step's pattern matches."""

    async def apply(self, driver: "DialogueDriver", result: MatchResult) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class Send(Action):
    """Send a rendered line and advance."""

    text: str

    async def apply(self, driver: "DialogueDriver", result: MatchResult) -> None:
        await driver.send_line(driver.context.render(self.text))


@dataclass(frozen=True)
class CaptureAndSend(Action):
    """Store named groups of the match, optionally send a line, advance."""

    groups: Tuple[str, ...]
    text: Optional[str] = None

    async def apply(self, driver: "DialogueDriver", result: MatchResult) -> None:
        for name in self.groups:
            value = result.named.get(name)
            if value is not None:
                driver.context.captured[name] = value.strip()
        if self.text is not None:
            await driver.send_line(driver.context.render(self.text))


@dataclass(frozen=True)
class Branch(Action):
    """Record which of several exclusive outcomes matched; send nothing."""

    name: str

    async def apply(self, driver: "DialogueDriver", result: MatchResult) -> None:
        driver.context.branch = self.name


@dataclass(frozen=True)
class Fail(Action):
    """Abort the dialogue with the peer's diagnostic."""

    reason: str
    error: Type[SpkError] = RemoteRejected

    async def apply(self, driver: "DialogueDriver", result: MatchResult) -> None:
        ctx = driver.context
        diagnostic = result.diagnostic
        ctx.reason = f"{self.reason}: {diagnostic}"
        await driver.cancel()
        raise self.error(
            ctx.reason,
            diagnostic=diagnostic,
            context={"step": ctx.step_index, "name": ctx.step_name},
        )


@dataclass(frozen=True)
class Expect:
    pattern: str
    action: Action


@dataclass(frozen=True)
class Step:
    name: str
    expects: Tuple[Expect, ...]
    timeout: StepTimeout = None

    @property
    def patterns(self) -> Tuple[str, ...]:
        return tuple(e.pattern for e in self.expects)


class DialogueDriver:
    """
    Walks steps over one connection.

    The driver owns neither the connection nor its lifetime; callers open and
    close it. No step is ever retried here.
    """

    def __init__(
        self,
        connection: AsyncConnection,
        context: SessionContext,
        cancel_token: Optional[str] = None,
        line_ending: str = CRLF,
        recorder: Optional[TraceRecorder] = None,
    ) -> None:
        self.connection = connection
        self.context = context
        self.cancel_token = cancel_token
        self.line_ending = line_ending
        self.recorder = recorder

    async def send_line(self, text: str) -> None:
        await self.connection.send(format_line(text, self.line_ending))

    async def cancel(self) -> None:
        """Send the cancellation token if the peer can still hear it."""
        if self.cancel_token is None or not self.connection.writable:
            return
        try:
            await self.send_line(self.cancel_token)
        except SessionIOError as e:
            logger.warning(f"[DIALOGUE] Could not send cancellation token: {e}")

    async def run_step(
        self, step: Step, number: Optional[int] = None
    ) -> Tuple[Expect, MatchResult]:
        """Run one step and return the expectation that fired."""
        ctx = self.context
        if number is None:
            number = ctx.step_index + 1
        ctx.step_index = number
        ctx.step_name = step.name
        ctx.branch = None
        timeout = ctx.timeout_for(step)
        log_step_event(
            logger,
            number,
            step.name,
            "waiting",
            "no timeout" if timeout is None else f"{timeout}s",
        )

        try:
            result = await self.connection.receive_until(step.patterns, timeout)
        except SessionIOError as e:
            e.add_context("step", number)
            e.add_context("name", step.name)
            ctx.reason = f"connection lost at step {number}"
            log_step_error(logger, number, step.name, e)
            raise

        if result is None:
            ctx.reason = f"no response at step {number}"
            if self.recorder is not None:
                self.recorder.timeout(number, step.name)
            error = ProtocolTimeout(
                ctx.reason,
                context={"step": number, "name": step.name, "timeout": timeout},
            )
            log_step_error(logger, number, step.name, error)
            await self.cancel()
            raise error

        expect = step.expects[result.index]
        if self.recorder is not None:
            self.recorder.matched(number, step.name, result.index)
        log_step_event(
            logger, number, step.name, "matched", type(expect.action).__name__
        )
        await expect.action.apply(self, result)
        return expect, result

    async def run(self, steps: Tuple[Step, ...]) -> SessionContext:
        """Run ``steps`` in order; returns the context on success."""
        for number, step in enumerate(steps, 1):
            await self.run_step(step, number)
        return self.context
