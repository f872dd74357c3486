from anthropic import AsyncAnthropic, APIStatusError, APIError, APIConnectionError, APITimeoutError, RateLimitError
from dataclasses import dataclass
from typing import Optional, Dict, List, Any, Protocol
import httpx

from buildloop.core.config import settings
from buildloop.core.exceptions import MalformedResponseError, OracleFailureKind
from buildloop.core.logging_config import logger

QUOTA_ERRORS = ['rate_limit_error']
TRANSIENT_ERRORS = ['overloaded_error', 'api_error', 'server_error']
TRANSIENT_STATUS_CODES = [500, 502, 503, 504, 529]


@dataclass
class OracleCompletion:
    """Raw text returned by one oracle call, plus usage"""
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: Optional[str] = None
    id: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class OracleTransport(Protocol):
    """Anything that can send one prepared request to the oracle"""

    async def complete(self, system_prompt: str, messages: List[Dict[str, Any]]) -> OracleCompletion:
        ...


class ClaudeClient:
    """
    Oracle transport backed by the Anthropic Messages API.

    Performs exactly one API call per `complete`. Retries, backoff and
    cancellation belong to the OracleGateway.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ):
        client_kwargs: Dict[str, Any] = {"api_key": api_key or settings.ANTHROPIC_API_KEY}

        # Only set base_url if it's a non-empty string with actual content
        base_url = base_url if base_url is not None else settings.ANTHROPIC_BASE_URL
        if base_url and base_url.strip():
            client_kwargs["base_url"] = base_url.strip()
            logger.info(f"Using custom Claude API base URL: {base_url}")

        client_kwargs["timeout"] = httpx.Timeout(
            connect=float(settings.ORACLE_CONNECT_TIMEOUT),
            read=float(settings.ORACLE_REQUEST_TIMEOUT),
            write=float(settings.ORACLE_REQUEST_TIMEOUT),
            pool=float(settings.ORACLE_REQUEST_TIMEOUT)
        )
        # The gateway owns the retry budget
        client_kwargs["max_retries"] = 0

        self.async_client = AsyncAnthropic(**client_kwargs)
        self.model = model or settings.ORACLE_MODEL
        self.max_tokens = max_tokens or settings.ORACLE_MAX_TOKENS
        self.temperature = temperature if temperature is not None else settings.ORACLE_TEMPERATURE

        logger.info(f"Claude client initialized: timeout={settings.ORACLE_REQUEST_TIMEOUT}s, model={self.model}")

    async def complete(self, system_prompt: str, messages: List[Dict[str, Any]]) -> OracleCompletion:
        """
        Send one non-streaming request.

        Args:
            system_prompt: System instruction
            messages: Anthropic-format message list, alternating user/assistant

        Returns:
            OracleCompletion with the concatenated text blocks
        """
        logger.info(f"Claude API: model={self.model}, max_tokens={self.max_tokens}, messages={len(messages)}")

        response = await self.async_client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            system=system_prompt or "",
            messages=messages
        )

        text = "".join(
            block.text for block in (response.content or [])
            if getattr(block, "type", None) == "text"
        )

        completion = OracleCompletion(
            text=text,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            stop_reason=response.stop_reason,
            id=response.id
        )

        logger.info(f"Claude API response: id={response.id}, tokens={completion.total_tokens}, stop={response.stop_reason}")
        logger.debug(f"Claude response preview: {text[:200]}..." if len(text) > 200 else text)

        return completion

    @staticmethod
    def classify_error(error: Exception) -> OracleFailureKind:
        """Map a transport or decode failure onto a failure kind"""
        if isinstance(error, MalformedResponseError):
            return OracleFailureKind.DECODE_FAILURE

        if isinstance(error, RateLimitError):
            return OracleFailureKind.QUOTA

        # Network/connection errors
        if isinstance(error, (APIConnectionError, APITimeoutError)):
            return OracleFailureKind.TRANSIENT_SERVER
        if isinstance(error, (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError)):
            return OracleFailureKind.TRANSIENT_SERVER

        if isinstance(error, (APIStatusError, APIError)):
            # Check error type from API response
            body = getattr(error, 'body', None)
            if isinstance(body, dict):
                error_type = (body.get('error') or {}).get('type', '')
                if error_type in QUOTA_ERRORS:
                    return OracleFailureKind.QUOTA
                if error_type in TRANSIENT_ERRORS:
                    return OracleFailureKind.TRANSIENT_SERVER
            status_code = getattr(error, 'status_code', None)
            if status_code == 429:
                return OracleFailureKind.QUOTA
            if status_code in TRANSIENT_STATUS_CODES:
                return OracleFailureKind.TRANSIENT_SERVER

        # Fallback: check error message
        error_str = str(error).lower()
        if any(marker in error_str for marker in ['rate_limit', 'rate limit', 'quota', '429']):
            return OracleFailureKind.QUOTA
        if any(marker in error_str for marker in ['overload', '529', '503', 'capacity', 'unavailable',
                                                  'connection', 'timeout', 'network']):
            return OracleFailureKind.TRANSIENT_SERVER

        return OracleFailureKind.UNKNOWN
