"""
Jupyter Kernel Client
=====================

Talks to a Jupyter server over its REST API and kernel WebSocket:
- list kernel specs
- start a kernel
- look a kernel up by id (the liveness check used by the heartbeat)
- shut a kernel down
- execute code and collect IOPub output

Transport failures surface as NetworkError. At this layer a server that
cannot be reached is indistinguishable from a kernel that no longer exists.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import structlog
import websockets
from jupyter_client.jsonutil import json_default
from jupyter_client.session import Session

from jupytercon.config import settings as default_settings
from jupytercon.errors import JupyterConError, NetworkError, NotFoundError, SessionStartError
from jupytercon.models import KernelModel, KernelSpecs, ServerConnection
from jupytercon.utils import is_error_msg, is_status_idle, msg_to_model_id

logger = structlog.get_logger(__name__)


@dataclass
class ExecutionResult:
    """IOPub traffic produced by one execute_request."""

    msg_id: str
    messages: List[Dict[str, Any]] = field(default_factory=list)
    model_ids: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    reply: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        if self.errors:
            return False
        return self.reply is None or self.reply.get("status") == "ok"

    def add(self, msg: Dict[str, Any]) -> None:
        self.messages.append(msg)
        if is_error_msg(msg):
            self.errors.append(msg.get("content", {}))
        model_id = msg_to_model_id(msg)
        if model_id:
            self.model_ids.append(model_id)


class KernelSession:
    """Handle to one live kernel on one server."""

    def __init__(self, client: "KernelClient", model: KernelModel, connection: ServerConnection):
        self.client = client
        self.model = model
        self.connection = connection

    @property
    def id(self) -> str:
        return self.model.id

    @property
    def name(self) -> str:
        return self.model.name

    async def execute(self, code: str, timeout: Optional[float] = None) -> ExecutionResult:
        return await self.client.execute(self, code, timeout=timeout)

    async def shutdown(self) -> None:
        await self.client.shutdown(self)

    def __repr__(self):
        return f"KernelSession(id={self.id!r}, name={self.name!r}, url={self.connection.url!r})"


class KernelClient:
    """REST + WebSocket client for the Jupyter kernels API."""

    def __init__(
        self,
        *,
        request_timeout: Optional[float] = None,
        execute_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.request_timeout = request_timeout or default_settings.REQUEST_TIMEOUT
        self.execute_timeout = execute_timeout or default_settings.EXECUTE_TIMEOUT
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        self._session = Session(username="jupytercon")

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                transport=self._transport, timeout=self.request_timeout
            )
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def list_kinds(self, connection: ServerConnection) -> KernelSpecs:
        """Kernel specs available on the server."""
        response = await self._request("GET", connection, "kernelspecs")
        if response.status_code >= 400:
            raise SessionStartError(
                f"Listing kernel specs on {connection.url} failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return KernelSpecs.model_validate(response.json())

    async def start(self, kind: str, connection: ServerConnection) -> KernelSession:
        """
        Start a new kernel of the given kind.

        Raises:
            SessionStartError: the server rejected the request
            NetworkError: the server could not be reached
        """
        response = await self._request("POST", connection, "kernels", json_body={"name": kind})
        if response.status_code >= 400:
            raise SessionStartError(
                f"Server refused to start a {kind} kernel: HTTP {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
            )
        model = KernelModel.model_validate(response.json())
        logger.info(f"[KERNEL] Started {model.id}", kind=kind, url=connection.url)
        return KernelSession(self, model, connection)

    async def connect_by_id(self, kernel_id: str, connection: ServerConnection) -> KernelModel:
        """
        Look up a kernel by id.

        Raises:
            NotFoundError: the server does not know this kernel
            NetworkError: the server could not be reached or is failing
        """
        response = await self._request("GET", connection, "kernels", kernel_id)
        if response.status_code == 404:
            raise NotFoundError(f"Kernel {kernel_id} not found on {connection.url}")
        if response.status_code >= 500:
            raise NetworkError(
                f"Server {connection.url} answered HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            raise NotFoundError(
                f"Kernel {kernel_id} not accessible on {connection.url}: HTTP {response.status_code}"
            )
        return KernelModel.model_validate(response.json())

    def connect_to(self, model: KernelModel, connection: ServerConnection) -> KernelSession:
        return KernelSession(self, model, connection)

    async def shutdown(self, session: KernelSession) -> None:
        response = await self._request(
            "DELETE", session.connection, "kernels", session.id
        )
        if response.status_code == 404:
            logger.warning(f"[KERNEL] {session.id} was already gone")
            return
        if response.status_code >= 400:
            raise JupyterConError(
                f"Shutting down kernel {session.id} failed with HTTP {response.status_code}"
            )
        logger.info(f"[KERNEL] Shut down {session.id}")

    async def execute(
        self, session: KernelSession, code: str, timeout: Optional[float] = None
    ) -> ExecutionResult:
        """
        Run code in the kernel and collect the IOPub messages it produces.

        Returns once the kernel reports idle for this request.

        Raises:
            NetworkError: the kernel channel could not be opened or dropped
            TimeoutError: the kernel did not go idle in time
        """
        timeout = timeout or self.execute_timeout
        msg = self._session.msg(
            "execute_request",
            content={
                "code": code,
                "silent": False,
                "store_history": True,
                "user_expressions": {},
                "allow_stdin": False,
                "stop_on_error": True,
            },
        )
        msg["channel"] = "shell"

        try:
            return await asyncio.wait_for(self._run(session, msg), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TimeoutError(
                f"Kernel {session.id} did not finish executing within {timeout} seconds"
            ) from e

    async def _run(self, session: KernelSession, msg: Dict[str, Any]) -> ExecutionResult:
        connection = session.connection
        url = (
            connection.ws_api_url("kernels", session.id, "channels")
            + f"?session_id={self._session.session}"
        )
        result = ExecutionResult(msg_id=msg["msg_id"])

        try:
            async with websockets.connect(
                url, additional_headers=connection.auth_headers(), max_size=None
            ) as ws:
                await ws.send(json.dumps(msg, default=json_default))

                while True:
                    raw = await ws.recv()
                    if isinstance(raw, bytes):
                        # Binary frames carry buffers we do not interpret
                        continue
                    try:
                        reply = json.loads(raw)
                    except ValueError:
                        logger.warning(f"[KERNEL] Ignoring non-JSON frame from {session.id}")
                        continue
                    if not isinstance(reply, dict):
                        continue
                    if reply.get("parent_header", {}).get("msg_id") != result.msg_id:
                        continue

                    channel = reply.get("channel")
                    if channel == "iopub":
                        result.add(reply)
                        if is_status_idle(reply):
                            break
                    elif channel == "shell" and reply.get("msg_type") == "execute_reply":
                        result.reply = reply.get("content", {})
        except (websockets.exceptions.WebSocketException, OSError) as e:
            raise NetworkError(f"Kernel channel for {session.id} failed: {e}") from e

        if result.errors:
            logger.warning(
                f"[KERNEL] Execution error in {session.id}",
                ename=result.errors[0].get("ename"),
            )
        return result

    async def _request(
        self,
        method: str,
        connection: ServerConnection,
        *parts: str,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        url = connection.api_url(*parts)
        try:
            return await self.http.request(
                method, url, headers=connection.auth_headers(), json=json_body
            )
        except httpx.TransportError as e:
            raise NetworkError(f"Cannot reach {connection.url}: {e}") from e
