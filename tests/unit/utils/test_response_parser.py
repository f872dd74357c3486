"""
Unit Tests for the Oracle Response Decoder
Tests for: JSON extraction from prose and fences, legacy type names, validation failures
"""
import json

import pytest

from buildloop.core.exceptions import MalformedResponseError
from buildloop.schemas.oracle import ChatResponse, ModifyCodeResponse, PlanResponse
from buildloop.schemas.project import ChangeAction
from buildloop.utils.response_parser import ResponseDecoder

from mocks.mock_oracle import chat_reply, modify_reply, plan_reply


class TestExtraction:
    """Test locating the JSON object"""

    def test_plain_json(self):
        """Test a bare object decodes"""
        response = ResponseDecoder.decode(chat_reply("Hi there"))
        assert isinstance(response, ChatResponse)
        assert response.message == "Hi there"

    def test_fenced_json(self):
        """Test an object inside a markdown fence decodes"""
        text = f"Here you go:\n```json\n{modify_reply()}\n```\nLet me know!"
        response = ResponseDecoder.decode(text)

        assert isinstance(response, ModifyCodeResponse)
        assert len(response.modification.changes) == 3
        assert response.modification.changes[0].action == ChangeAction.CREATE

    def test_prose_around_object(self):
        """Test leading and trailing prose are ignored"""
        text = f"Sure! {chat_reply('ok')} Hope that helps {{not json}}"
        assert ResponseDecoder.decode(text).message == "ok"

    def test_braces_inside_strings(self):
        """Test braces in file content do not end the object early"""
        text = modify_reply(changes=[{"filePath": "a.js", "action": "create", "content": "function f() { return '}'; }"}])
        response = ResponseDecoder.decode(text)
        assert response.modification.changes[0].content == "function f() { return '}'; }"

    def test_fence_without_json_falls_back(self):
        """Test a code fence without an object does not hide the real payload"""
        text = f"```\nnpm install\n```\n{chat_reply('installed')}"
        assert ResponseDecoder.decode(text).message == "installed"


class TestNormalization:
    """Test accepted spellings"""

    def test_project_plan_alias(self):
        """Test the legacy PROJECT_PLAN type decodes as a plan"""
        response = ResponseDecoder.decode(plan_reply(response_type="PROJECT_PLAN"))
        assert isinstance(response, PlanResponse)
        assert response.response_type == "PLAN"
        assert response.plan.file_structure[1].path == "src/App.tsx"

    def test_optional_requirements(self):
        """Test optional plan requirement lists are kept"""
        payload = json.loads(plan_reply())
        payload["plan"]["backendRequirements"] = ["REST API"]
        response = ResponseDecoder.decode(json.dumps(payload))
        assert response.plan.backend_requirements == ["REST API"]
        assert response.plan.frontend_requirements is None


class TestFailures:
    """Test everything undecodable raises MalformedResponseError"""

    @pytest.mark.parametrize("text", [
        "",
        "   ",
        "I can build that for you.",
        "[1, 2, 3]",
        '{"responseType": "CHAT", "message": ',
    ])
    def test_unparseable(self, text):
        """Test text without a usable object"""
        with pytest.raises(MalformedResponseError):
            ResponseDecoder.decode(text)

    @pytest.mark.parametrize("payload", [
        {"message": "no type"},
        {"responseType": "DANCE", "message": "x"},
        {"responseType": "CHAT", "message": ""},
        {"responseType": "PLAN", "plan": {"projectName": "x"}},
        {"responseType": "MODIFY_CODE", "modification": {"changes": []}},
        {"responseType": "MODIFY_CODE", "modification": {"reason": "r", "changes": [{"filePath": "a", "action": "rename"}]}},
    ])
    def test_invalid_payloads(self, payload):
        """Test objects missing required fields"""
        with pytest.raises(MalformedResponseError):
            ResponseDecoder.decode(json.dumps(payload))

    def test_snippet_kept(self):
        """Test the error carries the start of the raw text"""
        with pytest.raises(MalformedResponseError) as exc_info:
            ResponseDecoder.decode("no json here " * 50)
        assert exc_info.value.snippet.startswith("no json here")
        assert len(exc_info.value.snippet) == 200
