"""
Exception taxonomy for session acquisition.

Not-found style failures (missing cache entry, corrupted cache, unknown
kernel id, lost connectivity) all derive from NotFoundError so that callers
recovering from "no live session" recover from every one of them.
"""


class JupyterConError(Exception):
    """Base class for all jupytercon errors."""


class NotFoundError(JupyterConError):
    """No cached session exists, or the server does not know the kernel id."""


class MalformedCacheError(NotFoundError):
    """Stored session data could not be parsed."""


class NetworkError(NotFoundError):
    """
    The server could not be reached.

    Indistinguishable from a dead session at this layer, so it is handled
    the same way: the caller reprovisions.
    """


class ProvisioningError(JupyterConError):
    """The build/launch service failed, timed out, or was unreachable."""


class SessionStartError(JupyterConError):
    """The Jupyter server rejected a kernel start request."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code
