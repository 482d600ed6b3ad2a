"""
Session Manager
===============

Keeps one live Jupyter kernel available to a page:

- reattach to the kernel recorded in the session cache, or
- provision a server through BinderHub and start a fresh kernel,
- run the page's code cells against it and bind widget output,
- watch the kernel with a heartbeat and replace it when it dies.

State machine:
    UNSTARTED -> CONNECTING -> LIVE -> (heartbeat failure) -> CONNECTING -> LIVE ...
    SHUT_DOWN is only reached through kill_session().

Overlapping run() calls are coalesced through the run-state flag: a call made
while another is in flight awaits the in-flight run instead of starting a
second one.

The live kernel reference is last-writer-wins. The two never provision
concurrently: a heartbeat tick that fires while run() is acquiring a kernel
skips its check, and run() waits for a replacement the heartbeat already has
in flight and uses that kernel.
"""

import asyncio
from enum import Enum
from typing import List, Optional, Tuple

import structlog

from jupytercon.binder import BinderHub
from jupytercon.config import settings as default_settings
from jupytercon.errors import ProvisioningError, SessionStartError
from jupytercon.kernel_client import ExecutionResult, KernelClient, KernelSession
from jupytercon.models import KernelModel, ServerConnection, SessionSpec
from jupytercon.observability import get_tracer
from jupytercon.session_cache import FileStorage, SessionCache

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)


class SessionState(str, Enum):
    UNSTARTED = "unstarted"
    CONNECTING = "connecting"
    LIVE = "live"
    SHUT_DOWN = "shut_down"


class RunState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"


class SessionManager:
    """
    Runs page code against a remote kernel and keeps that kernel alive.

    Does not start a kernel until run() is called.
    """

    def __init__(
        self,
        spec: Optional[SessionSpec] = None,
        *,
        provisioner=None,
        cache: Optional[SessionCache] = None,
        client: Optional[KernelClient] = None,
        page=None,
        widget_manager=None,
        settings=None,
        image_spec: Optional[str] = None,
        base_url: Optional[str] = None,
        provider: Optional[str] = None,
        direct_url: Optional[str] = None,
    ):
        """
        Args:
            spec: Full SessionSpec. Alternatively pass image_spec, base_url,
                provider and direct_url individually.
            provisioner: Object with `async start_server() -> ServerInfo`;
                defaults to a BinderHub client for `spec`
            cache: SessionCache; defaults to a file-backed cache at
                settings.CACHE_PATH
            client: KernelClient used for every Jupyter server call
            page: Page listing the code cells to run
            widget_manager: WidgetManager bound to the live kernel
            settings: JupyterConSettings; defaults to the environment
        """
        fields = {
            "image_spec": image_spec,
            "base_url": base_url,
            "provider": provider,
            "direct_url": direct_url,
        }
        fields = {k: v for k, v in fields.items() if v is not None}
        if spec is not None and fields:
            raise TypeError("Pass either a SessionSpec or individual spec fields, not both")

        self.settings = settings or default_settings
        self.spec = spec or SessionSpec(**fields)

        self.binder = provisioner or BinderHub(
            self.spec,
            timeout=self.settings.PROVISION_TIMEOUT,
            request_timeout=self.settings.REQUEST_TIMEOUT,
        )
        self.cache = cache or SessionCache(FileStorage(self.settings.CACHE_PATH))
        self.client = client or KernelClient(
            request_timeout=self.settings.REQUEST_TIMEOUT,
            execute_timeout=self.settings.EXECUTE_TIMEOUT,
        )
        self.page = page
        self.manager = widget_manager

        # Keep track of properties for debugging
        self.kernel: Optional[KernelSession] = None
        self.state = SessionState.UNSTARTED
        self.run_state = RunState.IDLE

        self._run_task: Optional[asyncio.Task] = None
        self._replace_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._heartbeat_stop: Optional[asyncio.Event] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self) -> None:
        """Stop the heartbeat and release HTTP connections. The kernel keeps running."""
        await self.stop_heartbeat()
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def run(self) -> List[ExecutionResult]:
        """
        Starts a kernel if needed, runs code on the page, and binds widgets.

        A call made while another run is in flight joins it and returns the
        same result.
        """
        if self._run_task is not None and not self._run_task.done():
            logger.info("run() already in progress; joining the in-flight run")
            return await asyncio.shield(self._run_task)

        self._run_task = asyncio.create_task(self._run())
        return await self._run_task

    async def run_if_session_exists(self) -> Optional[List[ExecutionResult]]:
        """Same as run(), but only runs code if a kernel is already reachable."""
        try:
            await self.get_session_model()
        except Exception as err:
            logger.info(
                "No kernel, stopping the run_if_session_exists() call. Use run() "
                "to automatically start a kernel if needed.",
                reason=str(err),
            )
            return None

        return await self.run()

    async def get_or_start_session(self) -> KernelSession:
        """
        Return the live kernel, reattaching to the cached one or starting a
        new one as needed. Either returns a kernel or raises.
        """
        replacing = self._replace_task
        if replacing is not None and not replacing.done():
            logger.info("[KERNEL] Waiting for the heartbeat to replace the kernel")
            await asyncio.wait({replacing})

        if self.kernel is not None:
            return self.kernel

        previous_state = self.state
        self.state = SessionState.CONNECTING
        try:
            try:
                kernel = await self.get_session()
                logger.info(f"[KERNEL] Connected to cached kernel {kernel.id}")
            except Exception as err:
                logger.info(f"[KERNEL] No cached kernel, starting kernel on BinderHub: {err}")
                kernel = await self.start_session()
        except BaseException:
            self.state = previous_state
            raise

        self.kernel = kernel
        self.state = SessionState.LIVE
        return kernel

    async def get_session(self) -> KernelSession:
        """
        Connects to the kernel recorded in the cache. Raises if that fails
        for any reason.
        """
        connection, model = await self.get_session_model()
        return self.client.connect_to(model, connection)

    async def get_session_model(self) -> Tuple[ServerConnection, KernelModel]:
        """
        Retrieves the kernel model using the cached connection parameters.

        Raises:
            NotFoundError: nothing cached, or the kernel no longer exists
            MalformedCacheError: the cache could not be parsed
            NetworkError: the server could not be reached
        """
        cached = await self.cache.load()
        connection = cached.server_params
        model = await self.client.connect_by_id(cached.session_id, connection)
        return connection, model

    async def start_server(self) -> ServerConnection:
        """Provision a server and cache its connection parameters."""
        with tracer.start_as_current_span("jupytercon.start_server"):
            info = await self.binder.start_server()
            try:
                connection = ServerConnection.from_base_url(info.url, info.token)
            except ValueError as e:
                raise ProvisioningError(f"Provisioner returned an unusable URL {info.url!r}") from e

            await self.cache.save_server(connection)
            return connection

    async def start_session(self, connection: Optional[ServerConnection] = None) -> KernelSession:
        """
        Starts a new kernel and returns it, provisioning a server first when
        no connection is given. Caches the server parameters and kernel id.
        """
        with tracer.start_as_current_span("jupytercon.start_session"):
            try:
                if connection is None:
                    connection = await self.start_server()

                specs = await self.client.list_kinds(connection)
                try:
                    kind = specs.default_kind
                except ValueError as e:
                    raise SessionStartError(str(e)) from e

                kernel = await self.client.start(kind, connection)
                await self.cache.save(connection, kernel.id)

                logger.info(f"[KERNEL] Started kernel: {kernel.id}")
                return kernel
            except Exception:
                logger.exception("[KERNEL] Error in kernel initialization")
                raise

    async def kill_session(self) -> None:
        """Shut down the cached kernel. The heartbeat is stopped first."""
        kernel = await self.get_session()
        await self.stop_heartbeat()
        await kernel.shutdown()
        self.kernel = None
        self.state = SessionState.SHUT_DOWN

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    def start_heartbeat(self, interval: Optional[float] = None) -> asyncio.Task:
        """Start the heartbeat task. Returns the running task if there already is one."""
        if self.heartbeat_running:
            return self._heartbeat_task

        interval = interval or self.settings.HEARTBEAT_INTERVAL
        self._heartbeat_stop = asyncio.Event()
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat(interval, self._heartbeat_stop)
        )
        return self._heartbeat_task

    async def stop_heartbeat(self) -> None:
        task, stop = self._heartbeat_task, self._heartbeat_stop
        self._heartbeat_task = None
        self._heartbeat_stop = None
        if task is None:
            return

        stop.set()
        if task is asyncio.current_task() or task.done():
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _heartbeat(self, interval: float, stop: asyncio.Event) -> None:
        """
        Checks the kernel every `interval` seconds until `stop` is set. Each
        tick schedules exactly one next tick, whatever the tick's outcome.
        """
        logger.info(f"[HEARTBEAT] Monitor started. Interval: {interval}s")
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self._heartbeat_tick()
        logger.info("[HEARTBEAT] Monitor stopped.")

    async def _heartbeat_tick(self) -> bool:
        """
        One liveness check. If the kernel is dead, starts a new one and
        re-creates widgets. Never raises; returns whether the kernel was alive.
        """
        if self.state is SessionState.SHUT_DOWN:
            return False
        if self.run_state is RunState.ACQUIRING:
            logger.debug("[HEARTBEAT] run() is acquiring a kernel; skipping check")
            return True

        try:
            await self.get_session_model()
            return True
        except Exception as err:
            logger.warning(f"[HEARTBEAT] Looks like the kernel died: {err}")

        self._replace_task = asyncio.create_task(self._replace_kernel())
        await self._replace_task
        return False

    async def _replace_kernel(self) -> Optional[KernelSession]:
        logger.info("[HEARTBEAT] Starting a new kernel...")
        self.kernel = None
        self.state = SessionState.CONNECTING
        try:
            kernel = await self.start_session()
        except Exception as e:
            logger.error(f"[HEARTBEAT] Could not replace the kernel: {e}")
            return None

        self.kernel = kernel
        self.state = SessionState.LIVE

        if self.manager is not None:
            try:
                self.manager.set_kernel(kernel)
                await self.manager.generate_widgets()
            except Exception as e:
                logger.error(f"[HEARTBEAT] Failed to re-create widgets: {e}")
        return kernel

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self) -> List[ExecutionResult]:
        self.run_state = RunState.ACQUIRING
        try:
            kernel = await self.get_or_start_session()
            if self.manager is not None:
                self.manager.set_kernel(kernel)

            results = await self._execute_cells(kernel)

            if self.settings.HEARTBEAT_ON_RUN:
                self.start_heartbeat()
            return results
        finally:
            self.run_state = RunState.IDLE

    async def _execute_cells(self, kernel: KernelSession) -> List[ExecutionResult]:
        if self.page is None:
            return []

        results = []
        for cell in self.page.code_cells():
            code = self.page.cell_to_code(cell)
            if not code:
                continue

            result = await kernel.execute(code)
            results.append(result)

            if not result.ok:
                logger.warning("[KERNEL] Cell raised an error", errors=result.errors)

            if self.manager is not None:
                for model_id in result.model_ids:
                    await self.manager.display_model(cell, model_id)
        return results
