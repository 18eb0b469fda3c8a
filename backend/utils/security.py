"""Device identity, request signing and certificate pinning helpers."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import platform
import secrets
import socket
import ssl
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

import httpcore
import httpx

from utils.errors import CertificatePinningError
from utils.logger import get_logger
from utils.utcnow import epoch_ms

logger = get_logger("security")

_MACHINE_ID_FILES = (
    Path("/etc/machine-id"),
    Path("/var/lib/dbus/machine-id"),
)


def _read_machine_id() -> str:
    """Return the OS-level machine identifier or raise ``OSError``."""
    if sys.platform.startswith("linux"):
        for path in _MACHINE_ID_FILES:
            try:
                value = path.read_text(encoding="utf-8").strip()
            except OSError:
                continue
            if value:
                return value
        raise OSError("no machine-id file available")

    if sys.platform == "darwin":
        output = subprocess.run(
            ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"],
            capture_output=True,
            text=True,
            timeout=5,
            check=True,
        ).stdout
        for line in output.splitlines():
            if "IOPlatformUUID" in line:
                return line.split("=", 1)[1].strip().strip('"')
        raise OSError("IOPlatformUUID not found")

    if sys.platform == "win32":
        import winreg

        with winreg.OpenKey(
            winreg.HKEY_LOCAL_MACHINE, r"SOFTWARE\Microsoft\Cryptography"
        ) as key:
            value, _ = winreg.QueryValueEx(key, "MachineGuid")
            return str(value)

    raise OSError(f"unsupported platform {sys.platform}")


def _platform_name() -> str:
    return sys.platform


def _architecture() -> str:
    return platform.machine()


def get_device_fingerprint() -> str:
    """Stable per-machine SHA-256 fingerprint.

    Combines the machine id with platform, architecture, hostname and CPU
    count.  When the machine id cannot be read it degrades to a narrower hash
    of platform, architecture and hostname instead of failing.
    """
    hostname = socket.gethostname()
    try:
        machine_id = _read_machine_id()
        data = (
            f"{machine_id}-{_platform_name()}-{_architecture()}-"
            f"{hostname}-{os.cpu_count() or 0}"
        )
    except (OSError, subprocess.SubprocessError, ImportError) as exc:
        logger.warning("Machine id unavailable, using fallback fingerprint", error=str(exc))
        data = f"{_platform_name()}-{_architecture()}-{hostname}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


@dataclass
class SignedRequest:
    payload: dict[str, Any]
    signature: str
    timestamp: int
    nonce: str

    def headers(self) -> dict[str, str]:
        return {
            "X-Signature": self.signature,
            "X-Timestamp": str(self.timestamp),
            "X-Nonce": self.nonce,
        }


def canonical_json(payload: dict[str, Any]) -> str:
    """Serialize exactly the bytes that are signed and sent."""
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)


def sign_request(data: dict[str, Any], secret: str) -> SignedRequest:
    """HMAC-SHA256 sign ``data`` plus a fresh timestamp and nonce.

    The nonce is drawn per call, so two signatures over the same logical
    payload and key are never identical.
    """
    if not secret:
        raise ValueError("signing secret is required")
    timestamp = epoch_ms()
    nonce = secrets.token_hex(16)
    payload = {**data, "timestamp": timestamp, "nonce": nonce}
    signature = hmac.new(
        secret.encode("utf-8"),
        canonical_json(payload).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return SignedRequest(payload=payload, signature=signature, timestamp=timestamp, nonce=nonce)


def certificate_fingerprint(der_bytes: bytes) -> str:
    """Base64 SHA-256 of a DER-encoded certificate."""
    return base64.b64encode(hashlib.sha256(der_bytes).digest()).decode("ascii")


def peer_certificate(ssl_object: Optional[ssl.SSLObject]) -> bytes:
    if ssl_object is None:
        raise CertificatePinningError("No TLS session available for pinning")
    der = ssl_object.getpeercert(binary_form=True)
    if not der:
        raise CertificatePinningError("No certificate available")
    return der


def verify_pinned_certificate(ssl_object: Optional[ssl.SSLObject], expected: str) -> None:
    """Raise ``CertificatePinningError`` unless the peer matches ``expected``."""
    actual = certificate_fingerprint(peer_certificate(ssl_object))
    if not hmac.compare_digest(actual, expected):
        logger.error("Certificate fingerprint mismatch", expected=expected, actual=actual)
        raise CertificatePinningError("Server certificate fingerprint mismatch")


class _PinnedStream(httpcore.AsyncNetworkStream):
    """TCP stream whose TLS upgrade is checked against a pinned fingerprint."""

    def __init__(self, stream: httpcore.AsyncNetworkStream, expected: str):
        self._stream = stream
        self._expected = expected

    async def read(self, max_bytes: int, timeout: Optional[float] = None) -> bytes:
        return await self._stream.read(max_bytes, timeout=timeout)

    async def write(self, buffer: bytes, timeout: Optional[float] = None) -> None:
        await self._stream.write(buffer, timeout=timeout)

    async def aclose(self) -> None:
        await self._stream.aclose()

    async def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> httpcore.AsyncNetworkStream:
        tls_stream = await self._stream.start_tls(
            ssl_context, server_hostname=server_hostname, timeout=timeout
        )
        try:
            verify_pinned_certificate(tls_stream.get_extra_info("ssl_object"), self._expected)
        except CertificatePinningError:
            await tls_stream.aclose()
            raise
        return tls_stream

    def get_extra_info(self, info: str) -> Any:
        return self._stream.get_extra_info(info)


class PinnedNetworkBackend(httpcore.AsyncNetworkBackend):
    """Network backend that verifies the peer certificate right after the
    TLS handshake, before any request bytes are written."""

    def __init__(self, expected: str, backend: Optional[httpcore.AsyncNetworkBackend] = None):
        self._expected = expected
        self._backend = backend or httpcore.AnyIOBackend()

    async def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: Optional[float] = None,
        local_address: Optional[str] = None,
        socket_options: Optional[Iterable[Any]] = None,
    ) -> httpcore.AsyncNetworkStream:
        stream = await self._backend.connect_tcp(
            host,
            port,
            timeout=timeout,
            local_address=local_address,
            socket_options=socket_options,
        )
        return _PinnedStream(stream, self._expected)

    async def connect_unix_socket(
        self,
        path: str,
        timeout: Optional[float] = None,
        socket_options: Optional[Iterable[Any]] = None,
    ) -> httpcore.AsyncNetworkStream:
        stream = await self._backend.connect_unix_socket(
            path, timeout=timeout, socket_options=socket_options
        )
        return _PinnedStream(stream, self._expected)

    async def sleep(self, seconds: float) -> None:
        await self._backend.sleep(seconds)


class PinnedHTTPTransport(httpx.AsyncHTTPTransport):
    """``httpx`` transport whose connections go through ``PinnedNetworkBackend``.

    A fingerprint mismatch raises ``CertificatePinningError`` from the
    request call; nothing has been sent to the server at that point.
    """

    def __init__(
        self,
        expected: str,
        network_backend: Optional[httpcore.AsyncNetworkBackend] = None,
        retries: int = 0,
    ):
        super().__init__(retries=retries)
        # httpx has no public hook for the network backend; rebuild its pool.
        self._pool = httpcore.AsyncConnectionPool(
            ssl_context=httpx.create_ssl_context(),
            retries=retries,
            network_backend=PinnedNetworkBackend(expected, network_backend),
        )
