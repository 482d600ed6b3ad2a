"""Keep a remote Jupyter kernel alive for a page: provision, cache, heartbeat, replace."""

from jupytercon.binder import BinderHub
from jupytercon.config import JupyterConSettings, settings
from jupytercon.errors import (
    JupyterConError,
    MalformedCacheError,
    NetworkError,
    NotFoundError,
    ProvisioningError,
    SessionStartError,
)
from jupytercon.kernel_client import ExecutionResult, KernelClient, KernelSession
from jupytercon.models import CachedSession, ServerConnection, ServerInfo, SessionSpec
from jupytercon.page import Page, StaticPage, WidgetManager
from jupytercon.session_cache import FileStorage, MemoryStorage, SessionCache
from jupytercon.session_manager import RunState, SessionManager, SessionState

__version__ = "0.1.0"

__all__ = [
    "BinderHub",
    "CachedSession",
    "ExecutionResult",
    "FileStorage",
    "JupyterConError",
    "JupyterConSettings",
    "KernelClient",
    "KernelSession",
    "MalformedCacheError",
    "MemoryStorage",
    "NetworkError",
    "NotFoundError",
    "Page",
    "ProvisioningError",
    "RunState",
    "ServerConnection",
    "ServerInfo",
    "SessionCache",
    "SessionManager",
    "SessionSpec",
    "SessionStartError",
    "SessionState",
    "StaticPage",
    "WidgetManager",
    "settings",
]
