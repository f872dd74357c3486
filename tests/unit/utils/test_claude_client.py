"""
Unit Tests for the Claude transport
Tests for: single-call completion, failure classification
"""
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from buildloop.core.exceptions import MalformedResponseError, OracleFailureKind
from buildloop.utils.claude_client import ClaudeClient, OracleCompletion


def api_response(status_code: int) -> httpx.Response:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    return httpx.Response(status_code, request=request)


class TestComplete:
    """Test one API call"""

    @pytest.fixture
    def client(self):
        client = ClaudeClient(api_key="test-api-key", base_url="")
        client.async_client = MagicMock()
        return client

    @pytest.mark.asyncio
    async def test_text_blocks_joined(self, client):
        """Test text blocks are concatenated and usage recorded"""
        client.async_client.messages.create = AsyncMock(return_value=MagicMock(
            id="msg_123",
            content=[
                MagicMock(type="text", text='{"responseType": '),
                MagicMock(type="tool_use"),
                MagicMock(type="text", text='"CHAT", "message": "hi"}'),
            ],
            usage=MagicMock(input_tokens=12, output_tokens=8),
            stop_reason="end_turn",
        ))

        completion = await client.complete("system", [{"role": "user", "content": "hi"}])

        assert completion.text == '{"responseType": "CHAT", "message": "hi"}'
        assert completion.total_tokens == 20
        assert completion.id == "msg_123"
        kwargs = client.async_client.messages.create.call_args.kwargs
        assert kwargs["system"] == "system"
        assert kwargs["model"] == client.model

    @pytest.mark.asyncio
    async def test_errors_propagate(self, client):
        """Test the transport does not retry or swallow failures"""
        client.async_client.messages.create = AsyncMock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(httpx.ConnectError):
            await client.complete("system", [{"role": "user", "content": "hi"}])
        assert client.async_client.messages.create.call_count == 1

    def test_completion_totals(self):
        """Test token totals"""
        assert OracleCompletion(text="", input_tokens=3, output_tokens=4).total_tokens == 7


class TestClassifyError:
    """Test mapping failures onto kinds"""

    def test_malformed(self):
        """Test decode failures"""
        assert ClaudeClient.classify_error(MalformedResponseError("bad", "raw")) == OracleFailureKind.DECODE_FAILURE

    def test_rate_limit(self):
        """Test 429 responses are quota failures"""
        error = anthropic.RateLimitError("rate limited", response=api_response(429), body=None)
        assert ClaudeClient.classify_error(error) == OracleFailureKind.QUOTA

    def test_overloaded_body(self):
        """Test the error type in the body wins"""
        error = anthropic.APIStatusError(
            "overloaded", response=api_response(529), body={"error": {"type": "overloaded_error"}}
        )
        assert ClaudeClient.classify_error(error) == OracleFailureKind.TRANSIENT_SERVER

    @pytest.mark.parametrize("status_code", [500, 502, 503, 504])
    def test_server_errors(self, status_code):
        """Test 5xx responses are transient"""
        error = anthropic.APIStatusError("server error", response=api_response(status_code), body=None)
        assert ClaudeClient.classify_error(error) == OracleFailureKind.TRANSIENT_SERVER

    def test_network(self):
        """Test connection failures are transient"""
        assert ClaudeClient.classify_error(httpx.ConnectError("refused")) == OracleFailureKind.TRANSIENT_SERVER

    @pytest.mark.parametrize("message, kind", [
        ("You exceeded your current quota", OracleFailureKind.QUOTA),
        ("Service Unavailable", OracleFailureKind.TRANSIENT_SERVER),
        ("Invalid API key", OracleFailureKind.UNKNOWN),
    ])
    def test_message_fallback(self, message, kind):
        """Test plain exceptions are classified by their text"""
        assert ClaudeClient.classify_error(Exception(message)) == kind

    def test_bad_request_is_unknown(self):
        """Test client errors are not retried as transient"""
        error = anthropic.BadRequestError("invalid request", response=api_response(400), body=None)
        assert ClaudeClient.classify_error(error) == OracleFailureKind.UNKNOWN
