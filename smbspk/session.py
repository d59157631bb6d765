"""
Session orchestration for smbspk: the primary SPK request dialogue and the
hand-off of its result to the transfer sub-session.
"""

import asyncio
import logging
import os
import uuid
from typing import Optional, Tuple

from .config import Settings
from .connection import AsyncConnection, Endpoint
from .dialogue import (
    NO_TIMEOUT,
    CaptureAndSend,
    DialogueDriver,
    Expect,
    Fail,
    Send,
    SessionContext,
    Step,
)
from .exceptions import SpkError
from .patterns import DEFAULT_PATTERNS, PatternTable
from .protocol.trace_recorder import TraceRecorder
from .request import ArtifactRef, Outcome, SpkRequest, validate_request
from .transfer import TransferSession

logger = logging.getLogger(__name__)


def build_spk_script(
    patterns: PatternTable = DEFAULT_PATTERNS,
    handshake_timeout: Optional[float] = None,
) -> Tuple[Step, ...]:
    """
    The primary dialogue as data.

    Early steps use ``handshake_timeout`` because silence there means the
    service is not reachable. The steps that wait for file generation never
    time out: the remote integration can legitimately take a long time.
    """
    p = patterns
    bad_input = Expect(p.input_error, Fail("Remote reported an input error"))
    out_of_range = Expect(
        p.date_out_of_range, Fail("Requested time outside supported range")
    )
    generation_failed = Expect(p.generation_failed, Fail("SPK generation failed"))
    # The service only shows its main prompt mid-generation after giving up
    abandoned = Expect(p.main_prompt, Fail("Remote abandoned the request"))
    return (
        Step(
            "greeting",
            (Expect(p.main_prompt, Send("PAGE")),),
            timeout=handshake_timeout,
        ),
        Step(
            "elements-mode",
            (Expect(p.main_prompt, Send(";")),),
            timeout=handshake_timeout,
        ),
        Step("label", (Expect(p.label_prompt, Send("{label}")),)),
        Step("elements", (Expect(p.elements_prompt, Send("{elements}")),)),
        Step(
            "elements-check",
            (
                bad_input,
                Expect(p.value_too_large, Fail("Element value too large")),
                Expect(p.select_prompt, Send("S")),
            ),
        ),
        Step("email", (Expect(p.email_prompt, Send("{email}")),)),
        Step("email-confirm", (Expect(p.email_confirm_prompt, Send("yes")),)),
        Step("format", (Expect(p.format_prompt, Send("{format_code}")),)),
        Step("spk-id", (Expect(p.spk_id_prompt, Send("{spk_id}")),)),
        Step(
            "start",
            (
                Expect(p.id_rejected, Fail("SPK ID rejected")),
                Expect(p.start_prompt, Send("{start}")),
            ),
        ),
        Step(
            "stop",
            (
                out_of_range,
                bad_input,
                Expect(p.stop_prompt, Send("{stop}")),
            ),
        ),
        Step(
            "more-objects",
            (
                Expect(p.span_too_small, Fail("Requested time span below minimum")),
                out_of_range,
                bad_input,
                Expect(p.more_objects_prompt, Send("NO")),
            ),
        ),
        Step(
            "assigned-id",
            (
                bad_input,
                generation_failed,
                Expect(p.assigned_id, CaptureAndSend(("spk_id",))),
                abandoned,
            ),
            timeout=NO_TIMEOUT,
        ),
        Step(
            "file-path",
            (
                generation_failed,
                Expect(p.full_path, CaptureAndSend(("ftp_host", "ftp_path"))),
                abandoned,
            ),
            timeout=NO_TIMEOUT,
        ),
        Step("logout", (Expect(p.logout_prompt, Send("{cancel_token}")),)),
    )


class AsyncSession:
    """
    One complete run: request dialogue, then file retrieval.

    A session is used once. ``run`` never raises for protocol problems; every
    failure is reported through the returned :class:`Outcome`.
    """

    def __init__(
        self,
        request: SpkRequest,
        settings: Optional[Settings] = None,
        patterns: PatternTable = DEFAULT_PATTERNS,
        recorder: Optional[TraceRecorder] = None,
    ) -> None:
        self.request = request
        self.settings = settings or Settings()
        self.patterns = patterns
        self.recorder = recorder
        self.session_id = uuid.uuid4().hex[:8]
        self.context: Optional[SessionContext] = None
        self.artifact: Optional[ArtifactRef] = None
        self.transfer: Optional[TransferSession] = None
        self._outcome: Optional[Outcome] = None

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(self.settings.host, self.settings.port)

    @property
    def outcome(self) -> Optional[Outcome]:
        return self._outcome

    def _log_extra(self) -> dict:
        return {"session_id": self.session_id}

    async def run(self) -> Outcome:
        if self._outcome is not None:
            raise RuntimeError("Session already completed; create a new one")
        try:
            validate_request(self.request)
            self.artifact = await self.request_artifact()
            path = await self.retrieve(self.artifact)
        except SpkError as e:
            logger.error(f"Session failed: {e}", extra=self._log_extra())
            if self.recorder is not None:
                self.recorder.error(str(e))
            self._outcome = Outcome(
                success=False,
                reason=str(e),
                spk_id=self.artifact.spk_id if self.artifact else None,
            )
        else:
            self._outcome = Outcome(
                success=True,
                reason=f"Retrieved {path}",
                path=path,
                spk_id=self.artifact.spk_id,
            )
            logger.info(self._outcome.reason, extra=self._log_extra())
        return self._outcome

    async def request_artifact(self) -> ArtifactRef:
        """Drive the primary dialogue; returns where the generated file lives."""
        settings = self.settings
        self.context = SessionContext(
            params={
                **self.request.dialogue_params(),
                "cancel_token": settings.cancel_token,
            },
            default_timeout=settings.step_timeout,
            timeout_override=settings.timeout_override,
        )
        connection = await AsyncConnection.open(
            self.endpoint,
            timeout=settings.connect_timeout,
            telnet=True,
            recorder=self.recorder,
        )
        try:
            driver = DialogueDriver(
                connection,
                self.context,
                cancel_token=settings.cancel_token,
                line_ending=settings.line_ending,
                recorder=self.recorder,
            )
            await driver.run(
                build_spk_script(self.patterns, settings.handshake_timeout)
            )
        finally:
            await connection.close()
        artifact = ArtifactRef.from_captures(
            self.context.captured,
            binary=self.request.binary,
            default_directory=settings.ftp_directory,
            default_host=settings.host,
        )
        logger.info(
            f"Remote generated {artifact.filename} (SPK ID {artifact.spk_id})",
            extra=self._log_extra(),
        )
        return artifact

    def local_path_for(self, artifact: ArtifactRef) -> str:
        if self.request.output:
            return self.request.output
        return os.path.join(self.settings.output_dir, artifact.local_name)

    async def retrieve(self, artifact: ArtifactRef) -> str:
        """Fetch ``artifact`` over its own connection."""
        self.transfer = TransferSession(
            artifact,
            email=self.request.email.strip(),
            local_path=self.local_path_for(artifact),
            settings=self.settings,
            recorder=self.recorder,
        )
        return await self.transfer.run()


class Session:
    """
    Synchronous wrapper for AsyncSession.

    ``run`` executes the whole dialogue with ``asyncio.run()``.
    """

    def __init__(
        self,
        request: SpkRequest,
        settings: Optional[Settings] = None,
        patterns: PatternTable = DEFAULT_PATTERNS,
        recorder: Optional[TraceRecorder] = None,
    ) -> None:
        self._async_session = AsyncSession(request, settings, patterns, recorder)

    @property
    def session_id(self) -> str:
        return self._async_session.session_id

    @property
    def outcome(self) -> Optional[Outcome]:
        return self._async_session.outcome

    def run(self) -> Outcome:
        return asyncio.run(self._async_session.run())
