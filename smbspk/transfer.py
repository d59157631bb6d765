"""
Retrieval of the generated file over an FTP control-channel dialogue.

The control channel is driven by the same :class:`DialogueDriver` as the
primary session: login, transfer type and directory change are a fixed
script, the fetch is issued step by step. Active mode is tried first; a
data-connection failure (reply 425, or a refused PORT) switches to passive
mode and the fetch is retried exactly once.
"""

import asyncio
import ipaddress
import logging
import os
from typing import List, Optional, Tuple

from .config import Settings
from .connection import AsyncConnection, Endpoint
from .dialogue import (
    Branch,
    CaptureAndSend,
    DialogueDriver,
    Expect,
    Fail,
    Send,
    SessionContext,
    Step,
)
from .exceptions import TransferFailed
from .protocol.trace_recorder import TraceRecorder
from .request import ArtifactRef
from .utils.logging_utils import log_transfer_event

logger = logging.getLogger(__name__)

DATA_CHUNK_SIZE = 65536

# Single-line FTP replies; continuation lines ("230-...") never match.
READY = r"(?m)^220 .*\n"
NEED_PASSWORD = r"(?m)^331 .*\n"
LOGGED_IN = r"(?m)^230 .*\n"
LOGIN_FAILED = r"(?m)^530 .*\n"
COMMAND_OK = r"(?m)^200 .*\n"
FILE_ACTION_OK = r"(?m)^250 .*\n"
PASSIVE_MODE = r"(?m)^227 .*?\((?P<address>\d+(?:,\d+){5})\).*\n"
TRANSFER_STARTING = r"(?m)^(?:125|150) .*\n"
TRANSFER_COMPLETE = r"(?m)^226 .*\n"
DATA_CONNECTION_FAILED = r"(?m)^425 .*\n"
NOT_FOUND = r"(?m)^550 .*\n"
ANY_ERROR = r"(?m)^[45]\d\d .*\n"

QUIT = "QUIT"


def login_script() -> Tuple[Step, ...]:
    return (
        Step(
            "ftp-greeting",
            (
                Expect(READY, Send("USER {ftp_user}")),
                Expect(ANY_ERROR, Fail("FTP service refused connection", TransferFailed)),
            ),
        ),
        Step(
            "ftp-user",
            (
                Expect(NEED_PASSWORD, Send("PASS {email}")),
                Expect(ANY_ERROR, Fail("FTP login rejected", TransferFailed)),
            ),
        ),
        Step(
            "ftp-login",
            (
                Expect(LOGGED_IN, Send("TYPE {type_code}")),
                Expect(LOGIN_FAILED, Fail("FTP login rejected", TransferFailed)),
                Expect(ANY_ERROR, Fail("FTP login rejected", TransferFailed)),
            ),
        ),
        Step(
            "ftp-type",
            (
                Expect(COMMAND_OK, Send("CWD {directory}")),
                Expect(ANY_ERROR, Fail("Transfer type rejected", TransferFailed)),
            ),
        ),
        Step(
            "ftp-cwd",
            (
                Expect(FILE_ACTION_OK, Branch("ready")),
                Expect(ANY_ERROR, Fail("Remote directory unavailable", TransferFailed)),
            ),
        ),
    )


PORT_STEP = Step(
    "ftp-port",
    (
        Expect(COMMAND_OK, Branch("ok")),
        Expect(ANY_ERROR, Branch("transient")),
    ),
)

PASV_STEP = Step(
    "ftp-pasv",
    (
        Expect(PASSIVE_MODE, CaptureAndSend(("address",))),
        Expect(ANY_ERROR, Fail("Passive mode refused", TransferFailed)),
    ),
)

RETR_STEP = Step(
    "ftp-retr",
    (
        Expect(TRANSFER_STARTING, Branch("open")),
        Expect(DATA_CONNECTION_FAILED, Branch("transient")),
        Expect(NOT_FOUND, Fail("File not found on remote store", TransferFailed)),
        Expect(ANY_ERROR, Fail("Transfer refused", TransferFailed)),
    ),
)

COMPLETE_STEP = Step(
    "ftp-complete",
    (
        Expect(TRANSFER_COMPLETE, Branch("complete")),
        Expect(ANY_ERROR, Fail("Transfer aborted", TransferFailed)),
    ),
)


def port_argument(host: str, port: int) -> str:
    """Format ``host:port`` as the h1,h2,h3,h4,p1,p2 argument of PORT."""
    octets = host.split(".")
    return ",".join(octets + [str(port // 256), str(port % 256)])


def parse_pasv_address(address: str) -> Tuple[str, int]:
    """Parse the h1,h2,h3,h4,p1,p2 address from a 227 reply."""
    parts = [int(p) for p in address.split(",")]
    if len(parts) != 6 or any(p < 0 or p > 255 for p in parts):
        raise TransferFailed(
            f"Malformed passive address {address!r}", context={"address": address}
        )
    host = ".".join(str(p) for p in parts[:4])
    return host, parts[4] * 256 + parts[5]


class TransferSession:
    """
    Fetch one remote file into a local path.

    Owns its own connection; nothing is shared with the primary dialogue.
    The local file only appears once the server confirms the transfer.
    """

    def __init__(
        self,
        artifact: ArtifactRef,
        email: str,
        local_path: str,
        settings: Optional[Settings] = None,
        recorder: Optional[TraceRecorder] = None,
    ) -> None:
        self.artifact = artifact
        self.email = email
        self.local_path = local_path
        self.settings = settings or Settings()
        self.recorder = recorder
        self.modes: List[str] = []

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(self.settings.ftp_host or self.artifact.host, self.settings.ftp_port)

    @property
    def retries(self) -> int:
        return max(len(self.modes) - 1, 0)

    @property
    def partial_path(self) -> str:
        return self.local_path + ".part"

    def _context(self) -> SessionContext:
        return SessionContext(
            params={
                "ftp_user": self.settings.ftp_user,
                "email": self.email,
                "type_code": "I" if self.artifact.binary else "A",
                "directory": self.artifact.directory,
            },
            default_timeout=self.settings.step_timeout,
            timeout_override=self.settings.timeout_override,
        )

    async def run(self) -> str:
        """
        Log in, fetch the file and return the local path.

        Raises:
            ConnectFailed: If the FTP endpoint cannot be reached.
            ProtocolTimeout: If the server stops answering.
            TransferFailed: For login, directory or fetch errors.
        """
        endpoint = self.endpoint
        log_transfer_event(
            logger, "Starting", f"{self.artifact.filename} from {endpoint}"
        )
        connection = await AsyncConnection.open(
            endpoint,
            timeout=self.settings.connect_timeout,
            telnet=False,
            recorder=self.recorder,
        )
        done = False
        try:
            driver = DialogueDriver(
                connection,
                self._context(),
                cancel_token=QUIT,
                line_ending="\r\n",
                recorder=self.recorder,
            )
            await driver.run(login_script())

            completed = False
            if not self.settings.ftp_passive and self._active_capable(connection):
                completed = await self._fetch_active(driver)
                if not completed:
                    log_transfer_event(
                        logger,
                        "Data connection failed in active mode",
                        "retrying once in passive mode",
                    )
            if not completed:
                await self._fetch_passive(driver)

            # QUIT doubles as the cancellation token
            await driver.cancel()
            try:
                os.replace(self.partial_path, self.local_path)
            except OSError as e:
                raise TransferFailed(
                    f"Could not save {self.local_path}: {e}", original_exception=e
                ) from e
            done = True
        finally:
            if not done:
                self._discard_partial()
            await connection.close()
        log_transfer_event(logger, "Saved", self.local_path)
        return self.local_path

    @staticmethod
    def _active_capable(connection: AsyncConnection) -> bool:
        address = connection.local_address
        if not address:
            return False
        try:
            return ipaddress.ip_address(address[0]).version == 4
        except ValueError:
            return False

    async def _fetch_active(self, driver: DialogueDriver) -> bool:
        """Fetch with PORT. Returns False on a data-connection failure."""
        self.modes.append("active")
        loop = asyncio.get_running_loop()
        accepted: "asyncio.Future[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]" = (
            loop.create_future()
        )

        def _on_connect(
            reader: asyncio.StreamReader, writer: asyncio.StreamWriter
        ) -> None:
            if accepted.done():
                writer.close()
                return
            accepted.set_result((reader, writer))

        local_address = driver.connection.local_address
        if local_address is None:
            raise TransferFailed(
                "Control connection closed before PORT",
                context={"endpoint": str(self.endpoint)},
            )
        local_host = local_address[0]
        server = await asyncio.start_server(_on_connect, host=local_host, port=0)
        try:
            port = server.sockets[0].getsockname()[1]
            await driver.send_line(f"PORT {port_argument(local_host, port)}")
            await driver.run_step(PORT_STEP)
            if driver.context.branch == "transient":
                return False
            await driver.send_line(f"RETR {self.artifact.filename}")
            await driver.run_step(RETR_STEP)
            if driver.context.branch == "transient":
                return False
            try:
                reader, writer = await asyncio.wait_for(
                    accepted, self.settings.transfer_timeout
                )
            except asyncio.TimeoutError:
                await driver.cancel()
                raise TransferFailed(
                    "Server never opened the data connection",
                    context={"mode": "active"},
                )
            await self._receive(reader, writer, driver)
            await driver.run_step(COMPLETE_STEP)
            return True
        finally:
            if accepted.done() and not accepted.cancelled():
                accepted.result()[1].close()
            else:
                accepted.cancel()
            server.close()
            await server.wait_closed()

    async def _fetch_passive(self, driver: DialogueDriver) -> None:
        self.modes.append("passive")
        await driver.send_line("PASV")
        await driver.run_step(PASV_STEP)
        host, port = parse_pasv_address(driver.context.captured["address"])
        if host == "0.0.0.0":
            host = driver.connection.endpoint.host
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), self.settings.connect_timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            await driver.cancel()
            raise TransferFailed(
                f"Unable to open passive data connection to {host}:{port}",
                context={"mode": "passive"},
                original_exception=e,
            ) from e
        try:
            await driver.send_line(f"RETR {self.artifact.filename}")
            await driver.run_step(RETR_STEP)
            if driver.context.branch == "transient":
                await driver.cancel()
                raise TransferFailed(
                    "Data connection failed in passive mode",
                    context={"mode": "passive"},
                )
            await self._receive(reader, writer, driver)
        finally:
            writer.close()
        await driver.run_step(COMPLETE_STEP)

    async def _receive(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        driver: DialogueDriver,
    ) -> None:
        """Copy the data connection into the partial file until EOF."""
        total = 0
        carry = b""
        try:
            with open(self.partial_path, "wb") as f:
                while True:
                    try:
                        chunk = await asyncio.wait_for(
                            reader.read(DATA_CHUNK_SIZE), self.settings.transfer_timeout
                        )
                    except asyncio.TimeoutError:
                        await driver.cancel()
                        raise TransferFailed(
                            "Data connection stalled",
                            context={"received": total},
                        )
                    if not chunk:
                        break
                    total += len(chunk)
                    if not self.artifact.binary:
                        # ASCII type: CRLF on the wire, local newlines on disk
                        chunk = carry + chunk
                        carry = b"\r" if chunk.endswith(b"\r") else b""
                        if carry:
                            chunk = chunk[:-1]
                        chunk = chunk.replace(b"\r\n", b"\n")
                    f.write(chunk)
                f.write(carry)
        except OSError as e:
            await driver.cancel()
            raise TransferFailed(
                f"Data transfer to {self.partial_path} failed: {e}", original_exception=e
            ) from e
        finally:
            writer.close()
        log_transfer_event(logger, "Received", f"{total} bytes")

    def _discard_partial(self) -> None:
        try:
            os.remove(self.partial_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial file {self.partial_path}: {e}")


__all__ = [
    "TransferSession",
    "login_script",
    "parse_pasv_address",
    "port_argument",
]
