"""
Small helpers shared by the kernel client and the session manager:
URL derivation and kernel message classification.
"""

from typing import Any, Dict, Optional

from jupytercon.constants import WIDGET_MSG, WIDGET_PROTOCOL_MAJOR

_WS_SCHEMES = {"http": "ws", "https": "wss"}


def base_to_ws_url(base_url: str) -> str:
    """
    Converts a notebook HTTP URL to a WebSocket URL.

    http -> ws and https -> wss, except that any URL mentioning localhost
    always uses plain ws (local servers rarely terminate TLS themselves).
    """
    scheme, sep, rest = base_url.partition(":")
    if not sep or scheme.lower() not in _WS_SCHEMES:
        raise ValueError(f"Not an HTTP(S) URL: {base_url!r}")

    if "localhost" in base_url:
        return "ws:" + rest
    return _WS_SCHEMES[scheme.lower()] + ":" + rest


def is_error_msg(msg: Dict[str, Any]) -> bool:
    return _msg_type(msg) == "error"


def is_display_data_msg(msg: Dict[str, Any]) -> bool:
    return _msg_type(msg) == "display_data"


def is_status_idle(msg: Dict[str, Any]) -> bool:
    return (
        _msg_type(msg) == "status"
        and msg.get("content", {}).get("execution_state") == "idle"
    )


def msg_to_model_id(msg: Dict[str, Any]) -> Optional[str]:
    """
    Extract the widget model id from a display_data message.

    Returns None for anything that is not a version 2 widget view.
    """
    if not is_display_data_msg(msg):
        return None

    widget_data = msg.get("content", {}).get("data", {}).get(WIDGET_MSG)
    if not isinstance(widget_data, dict):
        return None
    if widget_data.get("version_major") != WIDGET_PROTOCOL_MAJOR:
        return None
    return widget_data.get("model_id")


def _msg_type(msg: Dict[str, Any]) -> Optional[str]:
    # Jupyter puts msg_type at the top level and in the header; accept either
    return msg.get("msg_type") or msg.get("header", {}).get("msg_type")
