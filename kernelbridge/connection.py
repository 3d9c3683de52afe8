"""
Obtains a reachable notebook server endpoint, either from the launch output
of a local server or from an explicit URI supplied by the user.
"""
import logging
import re
from typing import Optional
from urllib.parse import parse_qs, urlparse, urlunparse

import aiohttp

from .core.cancellation import CancellationToken, with_deadline
from .exceptions import (
    ConnectionTimeoutError,
    ProcessExitedError,
    RemoteConnectionRefusedError,
    UntrustedCertificateError,
)
from .models import Connection
from .process_launcher import ProcessHandle

# Jupyter prints "http://(hostname or 127.0.0.1):8888/?token=..." on some platforms
_HOST_ALTERNATIVES = re.compile(r"\((\S+) or ([^)\s]+)\)")
_URL_WITH_TOKEN = re.compile(r"(https?://[^\s]+\?[^\s]*token=\w+)")

# Path segments that start a notebook page rather than the server base path
_PAGE_SEGMENTS = ("tree", "lab", "notebooks", "edit", "terminals", "consoles", "doc")


def _split_uri(uri: str):
    """Return (base_url, token) for a server URI, dropping any page suffix like /tree."""
    parsed = urlparse(uri)
    token = parse_qs(parsed.query).get("token", [""])[0]
    segments = [s for s in parsed.path.split("/") if s]
    for i, segment in enumerate(segments):
        if segment in _PAGE_SEGMENTS:
            segments = segments[:i]
            break
    base_path = "/" + "".join(f"{s}/" for s in segments)
    base_url = urlunparse((parsed.scheme, parsed.netloc, base_path, "", "", ""))
    return base_url, token


def parse_connection_line(line: str, allow_unauthorized: bool = False) -> Optional[Connection]:
    """
    Recognize a server announcement of the form <scheme>://<host>:<port>/...?token=<token>.

    Args:
        line: One line of server output
        allow_unauthorized: Trust flag copied onto the resulting connection

    Returns:
        Connection or None: The announced endpoint, or None if the line holds none
    """
    normalized = _HOST_ALTERNATIVES.sub(r"\2", line)
    match = _URL_WITH_TOKEN.search(normalized)
    if not match:
        return None
    base_url, token = _split_uri(match.group(1))
    if not urlparse(base_url).port:
        return None
    return Connection(base_url=base_url, token=token, allow_unauthorized=allow_unauthorized, local_launch=True)


class ConnectionNegotiator:
    """
    Resolves a Connection from process output or from an explicit URI.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger("kernelbridge.connection")

    async def from_process(
        self,
        handle: ProcessHandle,
        timeout_ms: Optional[float],
        cancel_token: Optional[CancellationToken] = None,
    ) -> Connection:
        """
        Scan the output of a launched server until it announces its endpoint.

        Raises:
            ConnectionTimeoutError: If no endpoint appears before the deadline
            ProcessExitedError: If the process exits first
            OperationCanceledError: If cancel_token fires first
        """

        async def scan() -> Connection:
            async for line in handle.lines():
                connection = parse_connection_line(line)
                if connection is not None:
                    self._logger.info(f"Server process {handle.pid} announced {connection.display_name}")
                    return connection
            exit_code = await handle.wait()
            raise ProcessExitedError(
                f"Notebook server exited with code {exit_code} before announcing a connection",
                exit_code=exit_code,
                context={"pid": handle.pid},
            )

        return await with_deadline(
            scan(),
            timeout_ms,
            lambda: ConnectionTimeoutError(
                f"Notebook server did not announce a connection within {timeout_ms}ms",
                {"pid": handle.pid},
            ),
            cancel_token,
        )

    async def from_uri(
        self,
        uri: str,
        timeout_ms: Optional[float],
        allow_unauthorized: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Connection:
        """
        Validate an explicit server URI with a single handshake request.

        Raises:
            RemoteConnectionRefusedError: On refusal, an unreachable host or a rejected token
            UntrustedCertificateError: On a certificate that cannot be verified without opt-in
            ConnectionTimeoutError: If the handshake does not answer before the deadline
        """
        base_url, token = _split_uri(uri)
        connection = Connection(base_url=base_url, token=token, allow_unauthorized=allow_unauthorized)

        self._logger.info(f"Validating remote server {connection.display_name}")
        await with_deadline(
            self._handshake(connection),
            timeout_ms,
            lambda: ConnectionTimeoutError(
                f"Server {connection.display_name} did not answer within {timeout_ms}ms",
                {"url": connection.display_name},
            ),
            cancel_token,
        )
        return connection

    async def _handshake(self, connection: Connection) -> None:
        headers = {"Authorization": f"token {connection.token}"} if connection.token else {}
        ssl = False if connection.allow_unauthorized else True
        url = connection.api_url("api/kernelspecs")
        try:
            async with aiohttp.ClientSession(headers=headers) as http:
                async with http.get(url, ssl=ssl) as response:
                    if response.status in (401, 403):
                        raise RemoteConnectionRefusedError(
                            f"Server {connection.display_name} rejected the token (HTTP {response.status})",
                            {"status": response.status},
                        )
                    if response.status >= 400:
                        raise RemoteConnectionRefusedError(
                            f"Server {connection.display_name} answered HTTP {response.status}",
                            {"status": response.status},
                        )
        except aiohttp.ClientConnectorCertificateError as e:
            self._logger.warning(f"Untrusted certificate from {connection.display_name}: {e}")
            raise UntrustedCertificateError(
                f"Server {connection.display_name} presented an untrusted certificate. "
                "Allow unauthorized remote connections to connect anyway.",
                {"url": connection.display_name},
            ) from e
        except aiohttp.ClientSSLError as e:
            raise UntrustedCertificateError(
                f"TLS handshake with {connection.display_name} failed: {e}",
                {"url": connection.display_name},
            ) from e
        except aiohttp.ClientConnectorError as e:
            raise RemoteConnectionRefusedError(
                f"Could not connect to {connection.display_name}: {e}",
                {"url": connection.display_name},
            ) from e
