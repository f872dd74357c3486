"""
Context Optimizer

Keeps the oracle request payload inside the configured budget:

1. Message compression - transcripts longer than the threshold collapse
   everything but the most recent N messages into one system summary.
2. File selection - files are ranked by how often recent messages refer
   to them, then packed greedily under file-count and byte ceilings.

Neither lever raises on oversized input; both degrade to a best-effort trim.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from buildloop.core.config import settings
from buildloop.core.logging_config import logger
from buildloop.schemas.project import Message, MessageRole

# Every attachment is billed at a flat size; the payload is base64 so the real size is irrelevant here
ATTACHMENT_SIZE_BYTES = 1000

SUMMARY_PREFIX = "Previous conversation summary: "


@dataclass
class OptimizedContext:
    """Result of one optimize() pass"""
    messages: List[Message]
    files: Dict[str, str]
    compression_ratio: float = 1.0
    summary: Optional[str] = None
    original_size: int = 0
    optimized_size: int = 0


@dataclass
class ContextStats:
    message_count: int
    file_count: int
    total_size: int
    compression_needed: bool

    def to_dict(self) -> Dict[str, object]:
        return {
            "message_count": self.message_count,
            "file_count": self.file_count,
            "total_size": self.total_size,
            "compression_needed": self.compression_needed,
        }


@dataclass
class FileScore:
    path: str
    score: int
    size: int
    order: int = field(default=0, repr=False)


class ContextOptimizer:
    """Trims transcripts and file sets to fit the oracle's context budget"""

    # Path-like substrings worth counting as references
    REFERENCE_PATTERNS = [
        re.compile(r'File: ([^\n\r]+)'),
        re.compile(r'filePath="([^"]+)"'),
        re.compile(r'import[^\n\r]*?from\s+[\'"]([^\'"]+)[\'"]'),
        re.compile(r'\bsrc/([^\s\'"`),;]+)'),
        re.compile(r'\bcomponents/([^\s\'"`),;]+)'),
    ]

    _STRIP_PREFIXES = ("./", "../", "@/", "~/", "/")

    def __init__(
        self,
        max_message_history: Optional[int] = None,
        keep_recent_messages: Optional[int] = None,
        summary_chars: Optional[int] = None,
        scan_messages: Optional[int] = None,
        max_files: Optional[int] = None,
        max_file_bytes: Optional[int] = None,
        file_byte_budget: Optional[int] = None,
    ):
        self.max_message_history = settings.CONTEXT_MAX_MESSAGE_HISTORY if max_message_history is None else max_message_history
        self.keep_recent_messages = settings.CONTEXT_KEEP_RECENT_MESSAGES if keep_recent_messages is None else keep_recent_messages
        self.summary_chars = settings.CONTEXT_SUMMARY_CHARS if summary_chars is None else summary_chars
        self.scan_messages = settings.CONTEXT_SCAN_MESSAGES if scan_messages is None else scan_messages
        self.max_files = settings.CONTEXT_MAX_FILES if max_files is None else max_files
        self.max_file_bytes = settings.CONTEXT_MAX_FILE_BYTES if max_file_bytes is None else max_file_bytes
        self.file_byte_budget = settings.CONTEXT_FILE_BYTE_BUDGET if file_byte_budget is None else file_byte_budget

    # ==========================================
    # Sizing
    # ==========================================

    @staticmethod
    def _byte_size(text: str) -> int:
        return len(text.encode("utf-8"))

    def message_size(self, messages: List[Message]) -> int:
        return sum(
            self._byte_size(m.content) + len(m.attachments or []) * ATTACHMENT_SIZE_BYTES
            for m in messages
        )

    def file_size(self, files: Dict[str, str]) -> int:
        return sum(self._byte_size(content) for content in files.values())

    def stats(self, messages: List[Message], files: Dict[str, str]) -> ContextStats:
        """Report payload size and whether it is over the byte budget"""
        total_size = self.message_size(messages) + self.file_size(files)
        return ContextStats(
            message_count=len(messages),
            file_count=len(files),
            total_size=total_size,
            compression_needed=total_size > self.file_byte_budget
                or len(messages) > self.max_message_history,
        )

    # ==========================================
    # Message compression
    # ==========================================

    def _truncate(self, text: str) -> str:
        if len(text) <= self.summary_chars:
            return text
        return text[:self.summary_chars] + "..."

    def build_summary(self, messages: List[Message]) -> str:
        """Summarize from the latest user request and latest model reply"""
        last_user = next((m for m in reversed(messages) if m.role == MessageRole.USER), None)
        last_model = next((m for m in reversed(messages) if m.role == MessageRole.MODEL), None)

        parts = []
        if last_user is not None:
            parts.append(f"User requested: {self._truncate(last_user.content)}")
        if last_model is not None:
            parts.append(f"Assistant provided: {self._truncate(last_model.content)}")

        return " ".join(parts) or "Previous conversation context"

    def compress_messages(self, messages: List[Message]) -> Tuple[List[Message], Optional[str]]:
        """
        Collapse old messages into one system summary.

        Returns:
            (messages, summary) - summary is None when nothing was compressed
        """
        if len(messages) <= self.max_message_history:
            return list(messages), None

        keep = min(self.keep_recent_messages, len(messages))
        old_messages = messages[:len(messages) - keep]
        recent_messages = messages[len(messages) - keep:]
        if not old_messages:
            return list(messages), None

        summary = self.build_summary(old_messages)
        summary_message = Message(role=MessageRole.SYSTEM, content=SUMMARY_PREFIX + summary)

        logger.debug(
            f"[ContextOptimizer] Compressed {len(old_messages)} messages into summary, "
            f"kept {len(recent_messages)}"
        )
        return [summary_message, *recent_messages], summary

    # ==========================================
    # File selection
    # ==========================================

    def extract_references(self, text: str) -> Counter:
        """Count path-like references in text"""
        refs: Counter = Counter()
        for pattern in self.REFERENCE_PATTERNS:
            for match in pattern.finditer(text):
                ref = self._normalize_ref(match.group(1))
                if ref:
                    refs[ref] += 1
        return refs

    @classmethod
    def _normalize_ref(cls, ref: str) -> str:
        ref = ref.strip().strip("`'\"").rstrip(".:")
        changed = True
        while changed:
            changed = False
            for prefix in cls._STRIP_PREFIXES:
                if ref.startswith(prefix):
                    ref = ref[len(prefix):]
                    changed = True
        return ref

    @staticmethod
    def _strip_extension(path: str) -> str:
        name_start = path.rfind("/") + 1
        dot = path.rfind(".")
        return path[:dot] if dot > name_start else path

    @classmethod
    def _matches(cls, path: str, ref: str) -> bool:
        if path == ref or path.endswith("/" + ref):
            return True
        # Import specifiers usually omit the extension
        path_stem = cls._strip_extension(path)
        return path_stem == ref or path_stem.endswith("/" + ref)

    def score_files(self, files: Dict[str, str], messages: List[Message]) -> Dict[str, int]:
        """Reference frequency per file path over the most recent messages"""
        refs: Counter = Counter()
        for message in messages[-self.scan_messages:]:
            refs.update(self.extract_references(message.content))

        scores = {}
        for path in files:
            scores[path] = sum(count for ref, count in refs.items() if self._matches(path, ref))
        return scores

    def select_files(self, files: Dict[str, str], messages: List[Message]) -> Dict[str, str]:
        """
        Pick files by descending reference score under the count and byte budgets.

        Files nobody mentions are still eligible (score 0) so a small project
        is sent in full. Any single file over the per-file ceiling is skipped.
        """
        scores = self.score_files(files, messages)
        ranked = sorted(
            (FileScore(path=path, score=scores[path], size=self._byte_size(content), order=i)
             for i, (path, content) in enumerate(files.items())),
            key=lambda f: (-f.score, f.order)
        )

        selected: Dict[str, str] = {}
        total = 0
        for entry in ranked:
            if len(selected) >= self.max_files:
                break
            if entry.size > self.max_file_bytes:
                logger.debug(f"[ContextOptimizer] Skipping {entry.path}: {entry.size} bytes over per-file limit")
                continue
            if total + entry.size > self.file_byte_budget:
                continue
            selected[entry.path] = files[entry.path]
            total += entry.size

        if len(selected) < len(files):
            logger.info(
                f"[ContextOptimizer] Selected {len(selected)}/{len(files)} files ({total} bytes)",
                extra={"selected_files": len(selected), "total_files": len(files), "selected_bytes": total}
            )
        return selected

    # ==========================================
    # Combined
    # ==========================================

    def optimize(self, messages: List[Message], files: Optional[Dict[str, str]] = None) -> OptimizedContext:
        """Compress messages first, then select files against the compressed transcript"""
        files = files or {}
        original_size = self.message_size(messages) + self.file_size(files)

        optimized_messages, summary = self.compress_messages(messages)
        optimized_files = self.select_files(files, optimized_messages) if files else {}

        optimized_size = self.message_size(optimized_messages) + self.file_size(optimized_files)
        ratio = (optimized_size / original_size) if original_size else 1.0

        return OptimizedContext(
            messages=optimized_messages,
            files=optimized_files,
            compression_ratio=ratio,
            summary=summary,
            original_size=original_size,
            optimized_size=optimized_size,
        )
