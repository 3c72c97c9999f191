"""
HTTP Provider and Network Isolation Tests
=========================================

The HTTP provider is exercised through httpx.MockTransport; nothing here
opens a real socket. The mock provider must work with networking
disabled.
"""

import json
import socket
from unittest.mock import patch

import httpx
import pytest

from adapter.providers import HTTPProvider, InvocationParams, MockProvider, ProviderErrorCode


PARAMS = InvocationParams(seed=7, temperature=0.0, max_tokens=256, timeout_seconds=5.0)


def completion(content="Scene one.", finish_reason="stop"):
    return {"choices": [{"message": {"role": "assistant", "content": content},
                         "finish_reason": finish_reason}]}


def provider_for(handler, api_key=None):
    return HTTPProvider("https://gateway.test/v1/", "writer-large", api_key=api_key,
                        transport=httpx.MockTransport(handler))


class TestHTTPProvider:

    def test_success_forwards_envelope(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=completion("EPISODE 1: Pilot"))

        response = provider_for(handler, api_key="secret").invoke("TASK: unit_generation", PARAMS)

        assert response.success
        assert response.content == "EPISODE 1: Pilot"
        assert response.seed_used == 7
        assert seen["url"] == "https://gateway.test/v1/chat/completions"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["model"] == "writer-large"
        assert seen["body"]["seed"] == 7
        assert seen["body"]["messages"] == [{"role": "user", "content": "TASK: unit_generation"}]

    def test_no_auth_header_without_key(self):
        def handler(request):
            assert "Authorization" not in request.headers
            return httpx.Response(200, json=completion())

        assert provider_for(handler).invoke("prompt", PARAMS).success

    @pytest.mark.parametrize("status, code", [
        (429, ProviderErrorCode.RATE_LIMITED),
        (500, ProviderErrorCode.API_ERROR),
        (503, ProviderErrorCode.API_ERROR),
        (404, ProviderErrorCode.INVALID_RESPONSE),
    ])
    def test_http_status_mapping(self, status, code):
        response = provider_for(lambda request: httpx.Response(status)).invoke("prompt", PARAMS)
        assert not response.success
        assert response.error_code == code

    @pytest.mark.parametrize("reply, code", [
        (httpx.Response(200, json=completion(finish_reason="content_filter")),
         ProviderErrorCode.CONTENT_FILTERED),
        (httpx.Response(200, text="<html>oops</html>"), ProviderErrorCode.INVALID_RESPONSE),
        (httpx.Response(200, json={"choices": []}), ProviderErrorCode.INVALID_RESPONSE),
        (httpx.Response(200, json=completion(content=None)), ProviderErrorCode.INVALID_RESPONSE),
    ])
    def test_protocol_failures(self, reply, code):
        response = provider_for(lambda request: reply).invoke("prompt", PARAMS)
        assert response.error_code == code

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow gateway", request=request)

        response = provider_for(handler).invoke("prompt", PARAMS)
        assert response.error_code == ProviderErrorCode.TIMEOUT
        assert "5.0s" in response.error_message

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        response = provider_for(handler).invoke("prompt", PARAMS)
        assert response.error_code == ProviderErrorCode.NETWORK_ERROR


class TestNetworkIsolation:

    def test_mock_provider_no_network(self):
        with patch("socket.socket") as mock_socket:
            mock_socket.side_effect = AssertionError("Network call attempted")
            response = MockProvider().invoke("TASK: unit_generation\nPAYLOAD: {}", PARAMS)

        assert response.success
        assert mock_socket.call_count == 0

    def test_mock_provider_deterministic_offline(self):
        original_socket = socket.socket

        def blocked_socket(*args, **kwargs):
            raise OSError("Network disabled")

        socket.socket = blocked_socket
        try:
            contents = {MockProvider().invoke("test prompt", PARAMS).content for _ in range(5)}
        finally:
            socket.socket = original_socket

        assert len(contents) == 1
