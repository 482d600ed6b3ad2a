"""
Pydantic V2 models for session state.

SessionSpec is the constructor-time configuration; ServerConnection,
CachedSession and the kernel models describe what travels between the
provisioner, the cache and the Jupyter server.
"""

from typing import Any, Dict, Optional
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field, field_validator

from jupytercon.constants import DEFAULT_BASE_URL, DEFAULT_PROVIDER, DEFAULT_SPEC
from jupytercon.utils import base_to_ws_url


class FrozenModel(BaseModel):
    """Immutable base; unknown fields are rejected."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class SessionSpec(FrozenModel):
    """What to launch and where to launch it."""

    image_spec: str = Field(
        default=DEFAULT_SPEC,
        description="BinderHub spec in the format user/repo/branch",
    )
    base_url: str = Field(default=DEFAULT_BASE_URL, description="BinderHub URL")
    provider: str = Field(default=DEFAULT_PROVIDER, description="BinderHub provider")
    direct_url: Optional[str] = Field(
        default=None,
        description="URL of a running notebook server; bypasses Binder entirely",
    )

    @field_validator("image_spec")
    @classmethod
    def validate_image_spec(cls, v):
        parts = v.strip("/").split("/")
        if len(parts) < 3 or not all(parts):
            raise ValueError("image_spec must look like user/repo/branch")
        return v.strip("/")

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v):
        if not v or "/" in v:
            raise ValueError("provider must be a single path segment")
        return v

    @field_validator("direct_url")
    @classmethod
    def validate_direct_url(cls, v):
        if v and not v.lower().startswith(("http://", "https://")):
            raise ValueError("direct_url must be an http(s) URL")
        return v or None


class ServerConnection(FrozenModel):
    """Connection settings for one Jupyter server."""

    url: str
    ws_url: str
    token: str = ""

    @classmethod
    def from_base_url(cls, url: str, token: str = "") -> "ServerConnection":
        return cls(url=url, ws_url=base_to_ws_url(url), token=token or "")

    def auth_headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"token {self.token}"}

    def api_url(self, *parts: str) -> str:
        return _join(self.url, "api", *parts)

    def ws_api_url(self, *parts: str) -> str:
        return _join(self.ws_url, "api", *parts)


class CachedSession(FrozenModel):
    server_params: ServerConnection
    session_id: str


class ServerInfo(FrozenModel):
    """Result of provisioning: where the server lives and how to authenticate."""

    url: str
    token: str = ""


class BuildEvent(BaseModel):
    """One progress event from the build service."""

    model_config = ConfigDict(extra="ignore")

    phase: str = ""
    message: str = ""
    url: Optional[str] = None
    token: Optional[str] = None


class KernelModel(BaseModel):
    """REST representation of a running kernel."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    last_activity: Optional[str] = None
    execution_state: Optional[str] = None
    connections: int = 0


class KernelSpecs(BaseModel):
    """Response of GET /api/kernelspecs."""

    model_config = ConfigDict(extra="ignore")

    default: Optional[str] = None
    kernelspecs: Dict[str, Any] = Field(default_factory=dict)

    @property
    def default_kind(self) -> str:
        if self.default:
            return self.default
        if self.kernelspecs:
            return next(iter(self.kernelspecs))
        raise ValueError("Server reported no kernel specs")


def _join(base: str, *parts: str) -> str:
    tail = "/".join(quote(p.strip("/"), safe="") for p in parts if p)
    return base.rstrip("/") + "/" + tail
