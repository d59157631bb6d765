"""
In-process fake services for smbspk tests.

Both fakes run on ``asyncio.start_server`` bound to an ephemeral localhost
port, so tests never need the real ephemeris service or its FTP store.
"""

from .ephemeris_server import FakeEphemerisServer
from .ftp_server import FakeFtpServer

__all__ = ["FakeEphemerisServer", "FakeFtpServer"]
