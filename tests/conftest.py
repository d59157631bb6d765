import asyncio
import logging
from typing import Dict

import pytest
import pytest_asyncio

from smbspk.config import Settings
from smbspk.request import SpkRequest

from tests.mocks import FakeEphemerisServer, FakeFtpServer

logger = logging.getLogger(__name__)

ELEMENTS = (
    "EPOCH= 2457108.5 EC= .7816 QR= 1.3628 TP= 2457095.7 "
    "OM= 78.14 W= 321.2 IN= 5.83"
)


def pytest_configure(config):
    config.option.log_cli_level = "INFO"
    config.addinivalue_line("markers", "property: property-based tests (hypothesis)")
    config.addinivalue_line("markers", "integration: end-to-end runs against the fakes")


@pytest.fixture
def store() -> Dict[str, bytes]:
    """Remote file store shared by the fake service and the fake FTP server."""
    return {}


@pytest_asyncio.fixture
async def ftp_server(store):
    async with FakeFtpServer(files=store) as server:
        yield server


@pytest_asyncio.fixture
async def ephemeris_server(store):
    async with FakeEphemerisServer(store=store) as server:
        yield server


def settings_for(ephemeris, ftp, tmp_path, **overrides) -> Settings:
    """Settings pointing at the fakes, with timeouts short enough for tests."""
    values = dict(
        host=ephemeris.host if ephemeris else "127.0.0.1",
        port=ephemeris.port if ephemeris else 1,
        ftp_host=ftp.host if ftp else "127.0.0.1",
        ftp_port=ftp.port if ftp else 1,
        connect_timeout=2.0,
        handshake_timeout=2.0,
        step_timeout=2.0,
        transfer_timeout=2.0,
        output_dir=str(tmp_path),
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def make_settings(tmp_path):
    def _make(ephemeris=None, ftp=None, **overrides) -> Settings:
        return settings_for(ephemeris, ftp, tmp_path, **overrides)

    return _make


@pytest.fixture
def spk_request():
    def _make(**overrides) -> SpkRequest:
        values = dict(
            binary=True,
            label="wild2",
            start="2015-Jan-01",
            stop="2016-Jan-01",
            elements=ELEMENTS,
            email="observer@example.org",
        )
        values.update(overrides)
        return SpkRequest(**values)

    return _make


@pytest_asyncio.fixture
async def line_server():
    """
    Factory for a one-shot scripted peer.

    ``handler(reader, writer)`` runs for the single client; the fixture
    yields ``start(handler) -> port``.
    """
    servers = []

    async def start(handler) -> int:
        async def _wrapped(reader, writer):
            try:
                await handler(reader, writer)
            except (ConnectionError, asyncio.IncompleteReadError) as e:
                logger.debug(f"Scripted peer lost client: {e}")
            finally:
                writer.close()

        server = await asyncio.start_server(_wrapped, "127.0.0.1", 0)
        servers.append(server)
        return server.sockets[0].getsockname()[1]

    yield start

    for server in servers:
        server.close()
        await server.wait_closed()


@pytest.fixture
def preserve_root_logger():
    """Restore root logger handlers and level changed by ``setup_logging``."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield root
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
