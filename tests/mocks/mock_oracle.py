"""
Mock Oracle Transport for Testing
Plays back scripted replies without calling the actual API
"""
import asyncio
import json
from collections import deque
from typing import Any, Dict, List, Optional, Union

from buildloop.utils.claude_client import OracleCompletion


Reply = Union[str, BaseException]


class ScriptedOracle:
    """Transport that returns queued replies in order"""

    def __init__(self, *replies: Reply):
        self.replies = deque(replies)
        self.calls: List[Dict[str, Any]] = []
        self.call_count = 0
        self.started = asyncio.Event()
        self._gate: Optional[asyncio.Event] = None

    def queue(self, *replies: Reply) -> "ScriptedOracle":
        self.replies.extend(replies)
        return self

    def block(self) -> None:
        """Hold every following call until release()"""
        self._gate = asyncio.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()

    @property
    def last_system(self) -> Optional[str]:
        return self.calls[-1]["system"] if self.calls else None

    @property
    def last_user_text(self) -> str:
        """Text of the final user turn of the last call"""
        blocks = self.calls[-1]["messages"][-1]["content"]
        return "\n".join(b["text"] for b in blocks if b["type"] == "text")

    async def complete(self, system_prompt: str, messages: List[Dict[str, Any]]) -> OracleCompletion:
        self.call_count += 1
        self.calls.append({"system": system_prompt, "messages": messages})
        self.started.set()

        if self._gate is not None:
            await self._gate.wait()

        if not self.replies:
            raise AssertionError("ScriptedOracle ran out of replies")
        reply = self.replies.popleft()
        if isinstance(reply, BaseException):
            raise reply
        return OracleCompletion(text=reply, input_tokens=100, output_tokens=50, stop_reason="end_turn")


# ============================================
# Reply builders
# ============================================

def chat_reply(message: str = "Sure, what would you like to build?") -> str:
    return json.dumps({"responseType": "CHAT", "message": message})


def plan_reply(project_name: str = "Todo App", response_type: str = "PLAN") -> str:
    return json.dumps({
        "responseType": response_type,
        "plan": {
            "projectName": project_name,
            "description": "A simple todo list with local storage.",
            "features": ["Add todos", "Complete todos", "Persist to localStorage"],
            "fileStructure": [
                {"path": "index.html", "purpose": "Entry page"},
                {"path": "src/App.tsx", "purpose": "Root component"},
                {"path": "src/styles.css", "purpose": "Styles"},
            ],
            "techStack": ["React", "TypeScript"],
        },
    })


def change(path: str, content: Optional[str] = "", action: str = "create") -> Dict[str, Any]:
    entry: Dict[str, Any] = {"filePath": path, "action": action}
    if content is not None:
        entry["content"] = content
    return entry


def modify_reply(
    reason: str = "Built the todo app.",
    changes: Optional[List[Dict[str, Any]]] = None,
    project_name: Optional[str] = None,
    preview_html: Optional[str] = None,
) -> str:
    modification: Dict[str, Any] = {
        "reason": reason,
        "changes": changes if changes is not None else [
            change("index.html", "<div id=\"root\"></div>"),
            change("src/App.tsx", "export default function App() { return <h1>Todos</h1>; }"),
            change("src/styles.css", "h1 { color: teal; }"),
        ],
    }
    if project_name is not None:
        modification["projectName"] = project_name
    if preview_html is not None:
        modification["previewHtml"] = preview_html
    return json.dumps({"responseType": "MODIFY_CODE", "modification": modification})
