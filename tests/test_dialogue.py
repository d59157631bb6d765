import asyncio

import pytest

from smbspk.connection import AsyncConnection, Endpoint
from smbspk.dialogue import (
    NO_TIMEOUT,
    Branch,
    CaptureAndSend,
    DialogueDriver,
    Expect,
    Fail,
    NoTimeout,
    Send,
    SessionContext,
    Step,
)
from smbspk.exceptions import ProtocolTimeout, RemoteRejected, SessionIOError
from smbspk.protocol.trace_recorder import TraceRecorder


class Peer:
    """Scripted peer: writes each output, then collects one line of input."""

    def __init__(self, outputs, read_after=True):
        self.outputs = outputs
        self.read_after = read_after
        self.lines = []
        self.done = asyncio.Event()

    async def __call__(self, reader, writer):
        try:
            for text in self.outputs:
                if text is None:
                    # stay silent, record whatever arrives
                    break
                writer.write(text.encode())
                await writer.drain()
                if self.read_after:
                    line = await reader.readline()
                    if not line:
                        return
                    self.lines.append(line.decode().rstrip("\r\n"))
            while True:
                line = await reader.readline()
                if not line:
                    return
                self.lines.append(line.decode().rstrip("\r\n"))
        finally:
            self.done.set()


async def _driver(port, context=None, recorder=None, cancel_token="x"):
    conn = await AsyncConnection.open(Endpoint("127.0.0.1", port), timeout=2.0)
    return DialogueDriver(
        conn,
        context or SessionContext(default_timeout=2.0),
        cancel_token=cancel_token,
        recorder=recorder,
    )


class TestSessionContext:
    def test_render_uses_params_and_captures(self):
        ctx = SessionContext(params={"label": "wild2"}, captured={"spk_id": "3000001"})
        assert ctx.render("{label}/{spk_id}") == "wild2/3000001"

    def test_captures_shadow_params(self):
        ctx = SessionContext(params={"spk_id": ""}, captured={"spk_id": "42"})
        assert ctx.render("{spk_id}") == "42"

    def test_timeout_precedence(self):
        ctx = SessionContext(default_timeout=60.0)
        assert ctx.timeout_for(Step("a", ())) == 60.0
        assert ctx.timeout_for(Step("b", (), timeout=15.0)) == 15.0
        assert ctx.timeout_for(Step("c", (), timeout=NO_TIMEOUT)) is None

    def test_override_applies_to_every_step(self):
        ctx = SessionContext(default_timeout=60.0, timeout_override=0.5)
        assert ctx.timeout_for(Step("a", ())) == 0.5
        assert ctx.timeout_for(Step("b", (), timeout=15.0)) == 0.5
        assert ctx.timeout_for(Step("c", (), timeout=NO_TIMEOUT)) == 0.5

    def test_no_timeout_is_singleton(self):
        assert NoTimeout() is NO_TIMEOUT
        assert repr(NO_TIMEOUT) == "NO_TIMEOUT"


class TestSteps:
    def test_steps_are_immutable(self):
        step = Step("greeting", (Expect("Horizons> ", Send("PAGE")),))
        with pytest.raises(AttributeError):
            step.name = "other"
        assert step.patterns == ("Horizons> ",)


class TestDialogueDriver:
    @pytest.mark.asyncio
    async def test_run_sends_rendered_lines_in_order(self, line_server):
        peer = Peer(["Horizons> ", "Input label: "])
        driver = await _driver(
            await line_server(peer), SessionContext(params={"label": "wild2"})
        )
        try:
            ctx = await driver.run(
                (
                    Step("greeting", (Expect(r"Horizons> ", Send("PAGE")),)),
                    Step("label", (Expect(r"label: ", Send("{label}")),)),
                )
            )
        finally:
            await driver.connection.close()
        await asyncio.wait_for(peer.done.wait(), 2.0)
        assert peer.lines == ["PAGE", "wild2"]
        assert ctx.step_index == 2
        assert ctx.step_name == "label"

    @pytest.mark.asyncio
    async def test_exactly_one_action_per_step(self, line_server):
        # Both patterns match the same output; only the first one fires
        peer = Peer(["SPK ID 7 in use; SPK object START : "])
        driver = await _driver(await line_server(peer))
        try:
            expect, result = await driver.run_step(
                Step(
                    "start",
                    (
                        Expect(r"START : ", Send("2015-Jan-01")),
                        Expect(r"in use", Send("never")),
                    ),
                )
            )
        finally:
            await driver.connection.close()
        await asyncio.wait_for(peer.done.wait(), 2.0)
        assert result.index == 0
        assert peer.lines == ["2015-Jan-01"]

    @pytest.mark.asyncio
    async def test_capture_stores_named_groups(self, line_server):
        peer = Peer(
            [" Assigned SPK object ID:  3001234\r\n Full path : ftp://h/pub/f.15\r\n"],
            read_after=False,
        )
        driver = await _driver(await line_server(peer))
        try:
            await driver.run(
                (
                    Step(
                        "assigned-id",
                        (Expect(r"ID:\s*(?P<spk_id>\d+)", CaptureAndSend(("spk_id",))),),
                        timeout=NO_TIMEOUT,
                    ),
                    Step(
                        "file-path",
                        (
                            Expect(
                                r"ftp://(?P<ftp_host>[^/]+)/(?P<ftp_path>\S+)",
                                CaptureAndSend(("ftp_host", "ftp_path")),
                            ),
                        ),
                    ),
                )
            )
        finally:
            await driver.connection.close()
        assert driver.context.captured == {
            "spk_id": "3001234",
            "ftp_host": "h",
            "ftp_path": "pub/f.15",
        }

    @pytest.mark.asyncio
    async def test_capture_and_send_sends_text(self, line_server):
        peer = Peer(["code 42 > "])
        driver = await _driver(await line_server(peer))
        try:
            await driver.run_step(
                Step(
                    "code",
                    (Expect(r"code (?P<code>\d+)", CaptureAndSend(("code",), "ack {code}")),),
                )
            )
        finally:
            await driver.connection.close()
        await asyncio.wait_for(peer.done.wait(), 2.0)
        assert peer.lines == ["ack 42"]

    @pytest.mark.asyncio
    async def test_branch_records_outcome_without_sending(self, line_server):
        peer = Peer(["425 Can't open data connection.\r\n"], read_after=False)
        driver = await _driver(await line_server(peer))
        try:
            await driver.run_step(
                Step(
                    "retr",
                    (
                        Expect(r"(?m)^150 .*\n", Branch("open")),
                        Expect(r"(?m)^425 .*\n", Branch("transient")),
                    ),
                )
            )
            assert driver.context.branch == "transient"
        finally:
            await driver.connection.close()
        await asyncio.wait_for(peer.done.wait(), 2.0)
        assert peer.lines == []

    @pytest.mark.asyncio
    async def test_fail_sends_cancel_and_carries_diagnostic(self, line_server):
        peer = Peer(
            ["\r\n Cannot create SPK: time-span too small (32 days)\r\nHorizons> "],
            read_after=False,
        )
        driver = await _driver(await line_server(peer))
        driver.context.step_index = 11
        try:
            with pytest.raises(RemoteRejected) as exc_info:
                await driver.run_step(
                    Step(
                        "more-objects",
                        (
                            Expect(
                                r"time-span too small[^\r\n]*\r?\n",
                                Fail("Span below minimum"),
                            ),
                            Expect(r"Add more objects", Send("NO")),
                        ),
                    )
                )
        finally:
            await driver.connection.close()
        await asyncio.wait_for(peer.done.wait(), 2.0)
        err = exc_info.value
        assert err.diagnostic == "Cannot create SPK: time-span too small (32 days)"
        assert err.get_context("step") == 12
        assert driver.context.reason.startswith("Span below minimum: ")
        assert peer.lines == ["x"]

    @pytest.mark.asyncio
    async def test_timeout_reports_step_and_sends_cancel(self, line_server):
        peer = Peer([None])
        recorder = TraceRecorder()
        driver = await _driver(
            await line_server(peer),
            SessionContext(default_timeout=0.2),
            recorder=recorder,
        )
        try:
            with pytest.raises(ProtocolTimeout) as exc_info:
                await driver.run_step(Step("greeting", (Expect("Horizons> ", Send("PAGE")),)), 1)
        finally:
            await driver.connection.close()
        await asyncio.wait_for(peer.done.wait(), 2.0)
        assert exc_info.value.step == 1
        assert driver.context.reason == "no response at step 1"
        assert peer.lines == ["x"]
        assert "timeout" in recorder.kinds()

    @pytest.mark.asyncio
    async def test_timeout_without_cancel_token(self, line_server):
        peer = Peer([None])
        driver = await _driver(
            await line_server(peer), SessionContext(default_timeout=0.1), cancel_token=None
        )
        try:
            with pytest.raises(ProtocolTimeout):
                await driver.run_step(Step("greeting", (Expect("Horizons> ", Send("PAGE")),)))
        finally:
            await driver.connection.close()
        await asyncio.wait_for(peer.done.wait(), 2.0)
        assert peer.lines == []

    @pytest.mark.asyncio
    async def test_connection_lost_reports_step(self, line_server):
        async def hang_up(reader, writer):
            writer.write(b"Horizons> ")
            await writer.drain()

        driver = await _driver(await line_server(hang_up))
        try:
            with pytest.raises(SessionIOError) as exc_info:
                await driver.run_step(Step("label", (Expect("label: ", Send("x")),)), 3)
        finally:
            await driver.connection.close()
        assert exc_info.value.get_context("step") == 3
        assert driver.context.reason == "connection lost at step 3"

    @pytest.mark.asyncio
    async def test_cancel_on_closed_connection_is_silent(self, line_server):
        peer = Peer([None])
        driver = await _driver(await line_server(peer))
        await driver.connection.close()
        await driver.cancel()
