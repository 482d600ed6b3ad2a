"""
BinderHub Provisioner
=====================

Starts a notebook server for an image spec through a BinderHub-compatible
build service and returns where it lives.

The build endpoint streams server-sent events, one JSON object per `data:`
line, each carrying a `phase`. Everything before `ready` means "not ready
yet"; `ready` carries the server URL and token; `failed` ends the build.

No retry happens here. Build failures, HTTP errors, transport errors and the
overall timeout all surface as ProvisioningError.
"""

import asyncio
import inspect
import json
from typing import Callable, Iterable, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
import structlog
from pydantic import ValidationError

from jupytercon.config import settings as default_settings
from jupytercon.constants import PHASE_FAILED, PHASE_READY
from jupytercon.errors import ProvisioningError
from jupytercon.models import BuildEvent, ServerInfo, SessionSpec

logger = structlog.get_logger(__name__)


class BinderHub:
    """Request/poll client for the build/launch service."""

    def __init__(
        self,
        spec: Optional[SessionSpec] = None,
        *,
        timeout: Optional[float] = None,
        request_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            spec: What to build and where; defaults to SessionSpec()
            timeout: Overall limit for one build, in seconds
            request_timeout: Connect/write limit for the build request
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.spec = spec or SessionSpec()
        self.timeout = timeout or default_settings.PROVISION_TIMEOUT
        self.request_timeout = request_timeout or default_settings.REQUEST_TIMEOUT
        self._transport = transport
        self._callbacks: List[Tuple[Callable, Optional[frozenset]]] = []

    @property
    def build_url(self) -> str:
        return f"{self.spec.base_url}/build/{self.spec.provider}/{self.spec.image_spec}"

    def register_callback(
        self, callback: Callable, phases: Optional[Iterable[str]] = None
    ) -> None:
        """Call `callback(event)` for every build event, or only for `phases`."""
        self._callbacks.append((callback, frozenset(phases) if phases else None))

    async def start_server(self) -> ServerInfo:
        """
        Return the URL and token of a ready notebook server.

        A direct_url on the SessionSpec is returned as-is without any remote call.

        Raises:
            ProvisioningError: build failed, timed out, or the service was unreachable
        """
        if self.spec.direct_url:
            info = _split_direct_url(self.spec.direct_url)
            logger.info(f"[BINDER] Using notebook server at {info.url}")
            return info

        logger.info(f"[BINDER] Requesting server build: {self.build_url}")
        try:
            info = await asyncio.wait_for(self._build(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ProvisioningError(
                f"Server for {self.spec.image_spec} was not ready within {self.timeout} seconds"
            ) from e

        logger.info(f"[BINDER] Server ready at {info.url}")
        return info

    async def _build(self) -> ServerInfo:
        timeout = httpx.Timeout(self.request_timeout, read=None)
        async with httpx.AsyncClient(transport=self._transport, timeout=timeout) as client:
            try:
                async with client.stream(
                    "GET", self.build_url, headers={"Accept": "text/event-stream"}
                ) as response:
                    if response.status_code >= 400:
                        raise ProvisioningError(
                            f"Build request failed with HTTP {response.status_code}"
                        )

                    async for line in response.aiter_lines():
                        event = _parse_event(line)
                        if event is None:
                            continue

                        await self._notify(event)

                        if event.phase == PHASE_FAILED:
                            raise ProvisioningError(f"Build failed: {event.message}")
                        if event.phase == PHASE_READY:
                            if not event.url:
                                raise ProvisioningError("Build reported ready without a URL")
                            return ServerInfo(url=event.url, token=event.token or "")
            except httpx.HTTPError as e:
                raise ProvisioningError(f"Cannot reach {self.build_url}: {e}") from e

        raise ProvisioningError("Build stream ended before the server was ready")

    async def _notify(self, event: BuildEvent) -> None:
        logger.debug(f"[BINDER] phase={event.phase}", message=event.message)
        for callback, phases in self._callbacks:
            if phases is not None and event.phase not in phases:
                continue
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"[BINDER] Build callback raised: {e}")


def _parse_event(line: str) -> Optional[BuildEvent]:
    # Comments (":keepalive") and blank separators carry no data
    if not line.startswith("data:"):
        return None
    try:
        payload = json.loads(line[len("data:"):].strip())
    except ValueError:
        logger.warning(f"[BINDER] Ignoring unparsable event: {line[:200]}")
        return None
    if not isinstance(payload, dict):
        return None
    try:
        return BuildEvent.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"[BINDER] Ignoring malformed event: {line[:200]}", errors=e.error_count())
        return None


def _split_direct_url(url: str) -> ServerInfo:
    """Pull a ?token=... query parameter out of a notebook server URL."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    tokens = [value for key, value in query if key == "token"]
    if not tokens:
        return ServerInfo(url=url, token="")

    rest = [(key, value) for key, value in query if key != "token"]
    clean = urlunsplit(parts._replace(query=urlencode(rest)))
    return ServerInfo(url=clean, token=tokens[0])
