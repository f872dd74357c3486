"""
Oracle Response Decoder
Extracts the structured JSON payload from raw oracle text (which may be
wrapped in prose or markdown fences) and validates it against the
response schema for its declared kind.
"""

import json
import re
from typing import Any, Dict, Optional

from pydantic import ValidationError

from buildloop.core.exceptions import MalformedResponseError
from buildloop.core.logging_config import logger
from buildloop.schemas.oracle import (
    RESPONSE_TYPE_ALIASES,
    OracleResponse,
    oracle_response_adapter,
)


class ResponseDecoder:
    """Decode raw oracle output into a ChatResponse, PlanResponse or ModifyCodeResponse"""

    # ```json ... ``` or plain ``` ... ```
    FENCE_PATTERN = re.compile(r"```[a-zA-Z0-9_-]*[ \t]*\r?\n?(.*?)```", re.DOTALL)

    @staticmethod
    def extract_fenced_block(text: str) -> Optional[str]:
        """Return the content of the first fenced block, if any"""
        match = ResponseDecoder.FENCE_PATTERN.search(text)
        if match:
            return match.group(1).strip()
        return None

    @staticmethod
    def extract_json_object(text: str) -> Dict[str, Any]:
        """
        Locate the first JSON object in text and parse it.

        Parsing starts at the first '{' and stops at the end of that
        object, so trailing prose is ignored.

        Raises:
            MalformedResponseError: no object found or it does not parse
        """
        candidate = ResponseDecoder.extract_fenced_block(text)
        if candidate is None or "{" not in candidate:
            candidate = text

        start = candidate.find("{")
        if start == -1:
            raise MalformedResponseError("No JSON object found in oracle response", text)

        try:
            payload, _ = json.JSONDecoder().raw_decode(candidate[start:])
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Invalid JSON in oracle response: {e.msg}", text) from e

        if not isinstance(payload, dict):
            raise MalformedResponseError("Oracle response is not a JSON object", text)

        return payload

    @staticmethod
    def normalize(payload: Dict[str, Any]) -> Dict[str, Any]:
        """Map legacy response type names onto the canonical ones"""
        response_type = payload.get("responseType", payload.get("response_type"))
        if response_type in RESPONSE_TYPE_ALIASES:
            payload = dict(payload)
            payload.pop("response_type", None)
            payload["responseType"] = RESPONSE_TYPE_ALIASES[response_type]
        return payload

    @classmethod
    def decode(cls, text: str) -> OracleResponse:
        """
        Decode raw oracle text.

        Args:
            text: Raw oracle output

        Returns:
            The validated response variant

        Raises:
            MalformedResponseError: text cannot be decoded or misses required fields
        """
        if not text or not text.strip():
            raise MalformedResponseError("Empty oracle response", text or "")

        payload = cls.normalize(cls.extract_json_object(text))

        try:
            response = oracle_response_adapter.validate_python(payload)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'response'}: {err['msg']}"
                for err in e.errors()[:5]
            )
            raise MalformedResponseError(f"Oracle response failed validation: {problems}", text) from e

        logger.debug(f"[ResponseDecoder] Decoded {response.response_type} response ({len(text)} chars)")
        return response
