"""
Tests for URL derivation and kernel message classification.
"""

import pytest
from hypothesis import given, settings, strategies as st

from jupytercon.constants import WIDGET_MSG
from jupytercon.models import ServerConnection
from jupytercon.utils import (
    base_to_ws_url,
    is_display_data_msg,
    is_error_msg,
    is_status_idle,
    msg_to_model_id,
)

host_label = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789-", min_size=1, max_size=20)
path = st.text(alphabet="abcdefghijklmnopqrstuvwxyz/_", max_size=30)
port = st.integers(min_value=1, max_value=65535)


class TestBaseToWsUrl:
    def test_http_maps_to_ws(self):
        assert base_to_ws_url("http://example.test:8888/") == "ws://example.test:8888/"

    def test_https_maps_to_wss(self):
        assert (
            base_to_ws_url("https://hub.mybinder.org/user/abc/")
            == "wss://hub.mybinder.org/user/abc/"
        )

    def test_https_localhost_downgrades_to_ws(self):
        # Local development servers rarely terminate TLS themselves
        assert base_to_ws_url("https://localhost:8888/") == "ws://localhost:8888/"

    def test_http_localhost_stays_ws(self):
        assert base_to_ws_url("http://localhost:8888") == "ws://localhost:8888"

    def test_scheme_is_case_insensitive(self):
        assert base_to_ws_url("HTTPS://example.test/") == "wss://example.test/"

    @pytest.mark.parametrize("url", ["example.test", "ftp://example.test", ""])
    def test_rejects_non_http_urls(self, url):
        with pytest.raises(ValueError):
            base_to_ws_url(url)

    @given(
        scheme=st.sampled_from(["http", "https"]),
        prefix=st.text(alphabet="abc.-", max_size=5),
        port=port,
        path=path,
    )
    @settings(max_examples=100, deadline=None)
    def test_localhost_always_unencrypted(self, scheme, prefix, port, path):
        url = f"{scheme}://{prefix}localhost:{port}/{path}"
        ws = base_to_ws_url(url)
        assert ws.startswith("ws://")
        assert ws[len("ws:"):] == url.split(":", 1)[1]

    @given(scheme=st.sampled_from(["http", "https"]), host=host_label, port=port, path=path)
    @settings(max_examples=100, deadline=None)
    def test_scheme_counterpart_preserved(self, scheme, host, port, path):
        url = f"{scheme}://{host}.test:{port}/{path}"
        if "localhost" in url:
            return
        expected = {"http": "ws", "https": "wss"}[scheme]
        ws = base_to_ws_url(url)
        assert ws.split(":", 1)[0] == expected
        assert ws.split(":", 1)[1] == url.split(":", 1)[1]


class TestServerConnection:
    def test_from_base_url_derives_ws_url(self):
        conn = ServerConnection.from_base_url("https://hub.example.test/user/x/", "abc")
        assert conn.ws_url == "wss://hub.example.test/user/x/"
        assert conn.token == "abc"

    def test_auth_header_uses_token_scheme(self):
        conn = ServerConnection.from_base_url("http://example.test", "abc")
        assert conn.auth_headers() == {"Authorization": "token abc"}

    def test_no_auth_header_without_token(self):
        conn = ServerConnection.from_base_url("http://example.test")
        assert conn.auth_headers() == {}

    def test_api_url_joins_segments(self):
        conn = ServerConnection.from_base_url("https://hub.example.test/user/x/")
        assert conn.api_url("kernels", "k-1") == "https://hub.example.test/user/x/api/kernels/k-1"
        assert (
            conn.ws_api_url("kernels", "k-1", "channels")
            == "wss://hub.example.test/user/x/api/kernels/k-1/channels"
        )


def _display(data):
    return {"msg_type": "display_data", "content": {"data": data}}


class TestMessageClassification:
    def test_error_message(self):
        assert is_error_msg({"msg_type": "error", "content": {}})
        assert not is_error_msg({"msg_type": "stream"})

    def test_msg_type_read_from_header(self):
        assert is_display_data_msg({"header": {"msg_type": "display_data"}})

    def test_idle_status(self):
        assert is_status_idle({"msg_type": "status", "content": {"execution_state": "idle"}})
        assert not is_status_idle({"msg_type": "status", "content": {"execution_state": "busy"}})

    def test_widget_model_id_extracted(self):
        msg = _display({WIDGET_MSG: {"model_id": "m-1", "version_major": 2, "version_minor": 0}})
        assert msg_to_model_id(msg) == "m-1"

    def test_old_widget_protocol_ignored(self):
        msg = _display({WIDGET_MSG: {"model_id": "m-1", "version_major": 1}})
        assert msg_to_model_id(msg) is None

    def test_plain_display_data_has_no_model(self):
        assert msg_to_model_id(_display({"text/plain": "42"})) is None

    def test_non_display_message_has_no_model(self):
        msg = {"msg_type": "execute_result", "content": {"data": {WIDGET_MSG: {"model_id": "m", "version_major": 2}}}}
        assert msg_to_model_id(msg) is None
