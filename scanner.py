"""clamd client speaking the INSTREAM protocol over TCP."""

import logging
import re
import socket
import struct
import time
from typing import NamedTuple, Optional

from errors import ScanFailed, UpstreamUnavailable

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
_FOUND = re.compile(r"stream: (.+?) FOUND")


class ScanVerdict(NamedTuple):
    infected: bool
    signature: Optional[str] = None
    elapsed_ms: int = 0


class ClamdScanner:
    def __init__(self, host="localhost", port=3310, timeout=30.0):
        self.host = host
        self.port = port
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        return cls(config["CLAMAV_HOST"], config["CLAMAV_PORT"], config["CLAMAV_TIMEOUT_SECONDS"])

    def _connect(self):
        try:
            return socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as e:
            raise UpstreamUnavailable(f"ClamAV connection failed: {e}")

    def scan_stream(self, chunks):
        """Send every chunk of ``chunks`` (an iterable of bytes) to clamd."""
        started = time.monotonic()
        sock = self._connect()
        try:
            sock.sendall(b"zINSTREAM\0")
            for chunk in chunks:
                if not chunk:
                    continue
                for offset in range(0, len(chunk), CHUNK_SIZE):
                    piece = chunk[offset:offset + CHUNK_SIZE]
                    sock.sendall(struct.pack("!L", len(piece)) + piece)
            sock.sendall(struct.pack("!L", 0))
            response = self._read_response(sock)
        except socket.timeout:
            raise UpstreamUnavailable("ClamAV scan timeout")
        except OSError as e:
            raise UpstreamUnavailable(f"ClamAV connection failed: {e}")
        finally:
            sock.close()

        elapsed_ms = int((time.monotonic() - started) * 1000)
        return self._parse(response, elapsed_ms)

    def ping(self) -> bool:
        try:
            sock = self._connect()
        except UpstreamUnavailable:
            return False
        try:
            sock.settimeout(min(self.timeout, 5.0))
            sock.sendall(b"zPING\0")
            return self._read_response(sock) == "PONG"
        except OSError:
            return False
        finally:
            sock.close()

    @staticmethod
    def _read_response(sock):
        data = b""
        while not data.endswith(b"\0"):
            chunk = sock.recv(4096)
            if not chunk:
                break
            data += chunk
        return data.rstrip(b"\0").decode("utf-8", errors="replace").strip()

    @staticmethod
    def _parse(response, elapsed_ms):
        if response.endswith("stream: OK"):
            return ScanVerdict(False, None, elapsed_ms)
        if response.endswith("FOUND"):
            match = _FOUND.search(response)
            return ScanVerdict(True, match.group(1) if match else "Unknown", elapsed_ms)
        if response.endswith("ERROR"):
            raise ScanFailed(f"ClamAV reported an error: {response}")
        raise ScanFailed(f"Unexpected ClamAV response: {response!r}")
