"""
Wire client for a Jupyter notebook server.

JupyterServerClient talks to the REST API over one aiohttp.ClientSession;
KernelChannels wraps the per-kernel channels websocket. Messages follow the
Jupyter messaging protocol v5 and are built with jupyter_client's Session.
"""
import json
import logging
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiohttp
from jupyter_client.jsonutil import json_default
from jupyter_client.session import Session

from .exceptions import ServerRequestError
from .models import Connection, KernelSpecInfo


class KernelChannels:
    """
    The shell/iopub/stdin/control multiplex of one kernel, carried over a websocket.
    """

    def __init__(self, ws: aiohttp.ClientWebSocketResponse, kernel_id: str, session_id: Optional[str] = None):
        self.ws = ws
        self.kernel_id = kernel_id
        self.session = Session(username="kernelbridge", session=session_id or uuid.uuid4().hex)
        self._logger = logging.getLogger(f"kernelbridge.channels.{kernel_id[:8]}")

    @property
    def closed(self) -> bool:
        return self.ws.closed

    async def send(self, channel: str, msg_type: str, content: Optional[Dict[str, Any]] = None) -> str:
        """
        Send a message on the given channel.

        Returns:
            str: The msg_id of the sent message, used to correlate replies
        """
        msg = self.session.msg(msg_type, content=content or {})
        msg["channel"] = channel
        msg.pop("buffers", None)
        await self.ws.send_str(json.dumps(msg, default=json_default))
        self._logger.debug(f"Sent {msg_type} on {channel} ({msg['header']['msg_id'][:8]})")
        return msg["header"]["msg_id"]

    async def receive(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded messages until the websocket closes."""
        async for frame in self.ws:
            if frame.type == aiohttp.WSMsgType.TEXT:
                try:
                    message = json.loads(frame.data)
                except ValueError as e:
                    self._logger.warning(f"Dropping undecodable message: {e}")
                    continue
                yield message
            elif frame.type == aiohttp.WSMsgType.BINARY:
                self._logger.debug("Ignoring binary frame")
            elif frame.type == aiohttp.WSMsgType.ERROR:
                self._logger.warning(f"Websocket error: {self.ws.exception()}")
                break
        self._logger.debug("Channels websocket closed")

    async def close(self) -> None:
        if not self.ws.closed:
            await self.ws.close()


class JupyterServerClient:
    """
    REST and websocket access to one notebook server.
    """

    def __init__(self, connection: Connection, http: Optional[aiohttp.ClientSession] = None):
        self.connection = connection
        headers = {"Authorization": f"token {connection.token}"} if connection.token else {}
        self._http = http or aiohttp.ClientSession(headers=headers)
        self._ssl = False if connection.allow_unauthorized else True
        self._logger = logging.getLogger("kernelbridge.jupyter_api")

    @property
    def closed(self) -> bool:
        return self._http.closed

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = self.connection.api_url(path)
        self._logger.debug(f"{method} {url}")
        try:
            async with self._http.request(method, url, json=payload, ssl=self._ssl) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise ServerRequestError(
                        f"{method} {path} failed with HTTP {response.status}: {body[:200]}",
                        status=response.status,
                        context={"url": self.connection.display_name},
                    )
                if response.status == 204 or response.content_length == 0:
                    return None
                return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ServerRequestError(
                f"{method} {path} failed: {e}", context={"url": self.connection.display_name}
            ) from e

    async def get_kernel_specs(self) -> Tuple[Optional[str], List[KernelSpecInfo]]:
        """
        Returns:
            tuple: (default kernel name or None, available kernel specs)
        """
        body = await self._request("GET", "api/kernelspecs") or {}
        specs = []
        for name, entry in (body.get("kernelspecs") or {}).items():
            spec = entry.get("spec") or {}
            specs.append(
                KernelSpecInfo(
                    name=entry.get("name", name),
                    display_name=spec.get("display_name", name),
                    language=spec.get("language", ""),
                )
            )
        return body.get("default"), specs

    async def start_kernel(self, name: Optional[str] = None, path: Optional[str] = None) -> str:
        payload: Dict[str, Any] = {}
        if name:
            payload["name"] = name
        if path:
            payload["path"] = path
        body = await self._request("POST", "api/kernels", payload)
        kernel_id = body["id"]
        self._logger.info(f"Started kernel {kernel_id[:8]} ({body.get('name', name)}) on {self.connection.display_name}")
        return kernel_id

    async def interrupt_kernel(self, kernel_id: str) -> None:
        await self._request("POST", f"api/kernels/{kernel_id}/interrupt")

    async def restart_kernel(self, kernel_id: str) -> None:
        await self._request("POST", f"api/kernels/{kernel_id}/restart")

    async def shutdown_kernel(self, kernel_id: str) -> None:
        await self._request("DELETE", f"api/kernels/{kernel_id}")

    async def connect_channels(self, kernel_id: str) -> KernelChannels:
        session_id = uuid.uuid4().hex
        url = f"{self.connection.ws_url}api/kernels/{kernel_id}/channels?session_id={session_id}"
        try:
            ws = await self._http.ws_connect(url, ssl=self._ssl, max_msg_size=0)
        except aiohttp.ClientError as e:
            raise ServerRequestError(
                f"Could not open channels for kernel {kernel_id[:8]}: {e}",
                context={"url": self.connection.display_name},
            ) from e
        self._logger.debug(f"Opened channels for kernel {kernel_id[:8]}")
        return KernelChannels(ws, kernel_id, session_id)

    async def close(self) -> None:
        if not self._http.closed:
            await self._http.close()
