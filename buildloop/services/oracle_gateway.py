"""
Oracle Gateway

One logical "ask the oracle" call: build the outgoing payload from a
project's transcript and files, send it through the transport, decode
the reply, and retry transport or decode failures with backoff. Every
wait observes the run's cancellation token.

Conversation state lives in an OracleSession owned by each project, so
concurrent projects never share history.
"""

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from buildloop.core.config import settings
from buildloop.core.exceptions import (
    ORACLE_ERRORS_BY_KIND,
    GenerationCancelledError,
    OracleError,
    OracleFailureKind,
)
from buildloop.core.logging_config import logger
from buildloop.core.cancellation import CancellationToken
from buildloop.schemas.oracle import OracleResponse
from buildloop.schemas.project import Message, MessageRole
from buildloop.services.context_optimizer import ContextOptimizer, OptimizedContext
from buildloop.utils.claude_client import ClaudeClient, OracleCompletion, OracleTransport
from buildloop.utils.response_parser import ResponseDecoder


SYSTEM_PROMPT = """You are an expert full-stack engineer inside an AI app builder.
The user describes an application; you plan it, write it and fix it.

Reply with exactly ONE JSON object and nothing else, using one of these shapes:

1. Conversation, clarifying questions or explanations:
{"responseType": "CHAT", "message": "..."}

2. A plan for a NEW project, before any code exists:
{"responseType": "PLAN", "plan": {
  "projectName": "...", "description": "...",
  "features": ["..."],
  "fileStructure": [{"path": "src/App.tsx", "purpose": "..."}],
  "techStack": ["..."],
  "backendRequirements": ["..."], "frontendRequirements": ["..."], "standaloneRequirements": ["..."]}}

3. Code changes (first build, feature requests and error fixes):
{"responseType": "MODIFY_CODE", "modification": {
  "projectName": "optional new name",
  "reason": "what changed and why, for the user",
  "changes": [{"filePath": "src/App.tsx", "action": "create|update|delete", "content": "FULL file content"}],
  "previewHtml": "optional self-contained HTML preview",
  "standaloneHtml": "optional single-file standalone build"}}

Rules:
- Always send the full content of a created or updated file, never a diff.
- If project files are provided they are the current state of the project.
- When given runtime errors, fix their root cause with a MODIFY_CODE response.
- Reply in the language of the user's latest message."""

RETRY_REMINDER = (
    "IMPORTANT: your previous reply could not be processed. You MUST return only one valid "
    "JSON object matching one of the response shapes, with no text before or after it."
)

CONTEXT_HEADER = "### CURRENT PROJECT CONTEXT"
FILE_SEPARATOR = "\n\n---\n\n"


@dataclass
class OracleSession:
    """Per-project oracle conversation and usage accounting"""
    project_id: str
    system_instruction: str = SYSTEM_PROMPT
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    last_retry_count: int = 0
    last_compression_ratio: float = 1.0

    def record(self, completion: OracleCompletion) -> None:
        self.calls += 1
        self.input_tokens += completion.input_tokens
        self.output_tokens += completion.output_tokens

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "calls": self.calls,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "last_retry_count": self.last_retry_count,
            "last_compression_ratio": self.last_compression_ratio,
        }


class OracleGateway:
    """Sends prepared requests to the oracle with retry, backoff and cancellation"""

    def __init__(
        self,
        transport: Optional[OracleTransport] = None,
        optimizer: Optional[ContextOptimizer] = None,
        decoder: Optional[ResponseDecoder] = None,
        classifier: Optional[Callable[[Exception], OracleFailureKind]] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
    ):
        self.transport = transport if transport is not None else ClaudeClient()
        self.optimizer = optimizer or ContextOptimizer()
        self.decoder = decoder or ResponseDecoder()
        self.classifier = classifier or ClaudeClient.classify_error
        self.max_retries = settings.ORACLE_MAX_RETRIES if max_retries is None else max_retries
        self.base_delay = settings.ORACLE_RETRY_BASE_DELAY if base_delay is None else base_delay
        self.max_delay = settings.ORACLE_RETRY_MAX_DELAY if max_delay is None else max_delay

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate delay with exponential backoff and jitter"""
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        # Add jitter (0-25% of delay)
        jitter = delay * random.uniform(0, 0.25)
        return delay + jitter

    # ==========================================
    # Payload
    # ==========================================

    @staticmethod
    def format_file_context(files: Dict[str, str]) -> str:
        sections = [f"// FILE: {path}\n{content}" for path, content in files.items()]
        return f"{CONTEXT_HEADER}\n\n" + FILE_SEPARATOR.join(sections)

    @staticmethod
    def _attachment_blocks(message: Message) -> List[Dict[str, Any]]:
        blocks = []
        for attachment in message.attachments or []:
            if not attachment.type.startswith("image/"):
                logger.debug(f"[OracleGateway] Skipping non-image attachment {attachment.name} ({attachment.type})")
                continue
            blocks.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": attachment.type,
                    "data": attachment.content,
                },
            })
        return blocks

    def build_request(
        self,
        session: OracleSession,
        context: OptimizedContext,
        include_files: bool,
        retry: bool = False,
    ) -> tuple:
        """
        Build (system_prompt, messages) for the transport.

        Earlier turns keep only user/model roles; the latest message is
        always sent as the user turn and carries attachments, the file
        context and, on retries, the structured-output reminder.
        """
        transcript = context.messages
        if not transcript:
            raise ValueError("Cannot ask the oracle with an empty transcript")

        system_prompt = session.system_instruction
        if context.summary:
            system_prompt = f"{system_prompt}\n\nPrevious conversation summary: {context.summary}"

        messages: List[Dict[str, Any]] = []

        def append(role: str, blocks: List[Dict[str, Any]]) -> None:
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"].extend(blocks)
            else:
                messages.append({"role": role, "content": list(blocks)})

        for message in transcript[:-1]:
            if message.role == MessageRole.USER:
                role = "user"
            elif message.role == MessageRole.MODEL:
                role = "assistant"
            else:
                continue
            if not messages and role == "assistant":
                # The API requires the conversation to open with a user turn
                continue
            if message.content:
                append(role, [{"type": "text", "text": message.content}])

        latest = transcript[-1]
        latest_blocks: List[Dict[str, Any]] = self._attachment_blocks(latest)
        text = latest.content
        if include_files and context.files:
            text = f"{text}\n\n{self.format_file_context(context.files)}"
        if retry:
            text = f"{text}\n\n{RETRY_REMINDER}"
        latest_blocks.append({"type": "text", "text": text})
        append("user", latest_blocks)

        return system_prompt, messages

    # ==========================================
    # Call
    # ==========================================

    async def ask(
        self,
        session: OracleSession,
        transcript: List[Message],
        files: Optional[Dict[str, str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> OracleResponse:
        """
        Ask the oracle once, retrying up to max_retries more times.

        Args:
            session: The calling project's session
            transcript: Messages to send; the last one is the current request
            files: Project files to attach, or None for no file context
            token: Run cancellation token

        Returns:
            ChatResponse, PlanResponse or ModifyCodeResponse

        Raises:
            GenerationCancelledError: the token fired
            OracleError: retries exhausted (subclass per failure kind)
        """
        token = token or CancellationToken()
        context = self.optimizer.optimize(transcript, files)
        session.last_compression_ratio = context.compression_ratio

        total_attempts = self.max_retries + 1
        last_error: Optional[Exception] = None
        kind = OracleFailureKind.UNKNOWN

        for attempt in range(total_attempts):
            token.raise_if_cancelled()
            system_prompt, messages = self.build_request(
                session, context, include_files=files is not None, retry=attempt > 0
            )

            start = time.monotonic()
            try:
                completion = await token.guard(self.transport.complete(system_prompt, messages))
                session.record(completion)
                response = self.decoder.decode(completion.text)
            except GenerationCancelledError:
                logger.log_oracle_event("cancelled", attempt=attempt + 1, project_id=session.project_id)
                raise
            except Exception as e:
                last_error = e
                kind = self.classifier(e)
                if attempt < self.max_retries:
                    delay = self._calculate_retry_delay(attempt)
                    logger.warning(
                        f"Oracle error [{kind.value}] (attempt {attempt + 1}/{total_attempts}), "
                        f"retrying in {delay:.1f}s...",
                        extra={
                            "event_type": "oracle_retry",
                            "error_type": type(e).__name__,
                            "failure_kind": kind.value,
                            "attempt": attempt + 1,
                            "max_retries": total_attempts,
                            "retry_delay": delay,
                            "project_id": session.project_id,
                        }
                    )
                    await token.sleep(delay)
                continue

            session.last_retry_count = attempt
            logger.log_oracle_event(
                f"{response.response_type} response",
                attempt=attempt + 1,
                tokens_used=completion.total_tokens,
                project_id=session.project_id,
            )
            logger.log_performance("oracle_call", (time.monotonic() - start) * 1000, threshold_ms=60000)
            return response

        session.last_retry_count = self.max_retries
        error_cls = ORACLE_ERRORS_BY_KIND.get(kind, ORACLE_ERRORS_BY_KIND[OracleFailureKind.UNKNOWN])
        last_error_text = f"{type(last_error).__name__}: {last_error}" if last_error else ""
        error: OracleError = error_cls(
            f"Oracle call failed after {total_attempts} attempts",
            last_error_text=last_error_text,
            attempts=total_attempts,
        )
        logger.error(
            f"Oracle call failed ({kind.value}) after {total_attempts} attempts: {last_error_text}",
            extra={
                "event_type": "oracle_error",
                "failure_kind": kind.value,
                "attempts": total_attempts,
                "project_id": session.project_id,
            }
        )
        raise error
