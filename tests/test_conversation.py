import json

import pytest
from pydantic import ValidationError

from meetprep.schemas import (
    Conversation,
    DossierRequest,
    ModelTurn,
    RunResult,
    ToolCall,
    ToolResult,
    ToolResultTurn,
    UserTurn,
)
from meetprep.validator import validate_dossier
from tests.fakes import valid_dossier


def test_tool_calls_must_be_answered_before_next_model_turn():
    convo = Conversation()
    convo.append(UserTurn(text="seed"))
    call = ToolCall(id="c1", name="research", arguments={"query": "x"})
    convo.append(ModelTurn(tool_calls=[call]))
    assert [c.id for c in convo.pending_calls()] == ["c1"]
    with pytest.raises(RuntimeError):
        convo.append(ModelTurn(text="too early"))
    convo.append(ToolResultTurn(tool_call_id="c1", tool_name="research", result=ToolResult.success({"content": "x"})))
    assert convo.pending_calls() == []
    convo.append(ModelTurn(text="ok"))
    assert len(convo) == 4


def test_tool_result_for_unknown_or_answered_call_rejected():
    convo = Conversation()
    convo.append(ModelTurn(tool_calls=[ToolCall(id="c1", name="research")]))
    result = ToolResult.failure("boom")
    with pytest.raises(RuntimeError):
        convo.append(ToolResultTurn(tool_call_id="nope", tool_name="research", result=result))
    convo.append(ToolResultTurn(tool_call_id="c1", tool_name="research", result=result))
    with pytest.raises(RuntimeError):
        convo.append(ToolResultTurn(tool_call_id="c1", tool_name="research", result=result))


def test_to_messages_renders_openai_tool_history():
    convo = Conversation()
    convo.append(UserTurn(text="seed"))
    convo.append(ModelTurn(text="", tool_calls=[ToolCall(id="c1", name="research", arguments={"query": "Jane"})]))
    convo.append(
        ToolResultTurn(tool_call_id="c1", tool_name="research", result=ToolResult.failure("research unavailable"))
    )
    messages = convo.to_messages("system text")
    assert messages[0] == {"role": "system", "content": "system text"}
    assert messages[2]["tool_calls"][0]["function"] == {"name": "research", "arguments": '{"query": "Jane"}'}
    assert messages[3] == {"role": "tool", "tool_call_id": "c1", "content": '{"error": "research unavailable"}'}


def test_tool_result_content_dumps_models_by_alias():
    dossier = validate_dossier(valid_dossier())
    content = json.loads(ToolResult.success(dossier).content())
    assert content["opener"].startswith("Congrats")
    assert ToolResult.success("plain text").content() == "plain text"


def test_request_accepts_notes_alias_and_null_notes():
    req = DossierRequest.model_validate({"linkedinUrl": " https://linkedin.com/in/jane ", "notes": "lunch"})
    assert req.linkedin_url == "https://linkedin.com/in/jane"
    assert req.additional_notes == "lunch"
    req = DossierRequest.model_validate({"linkedinUrl": "https://linkedin.com/in/jane", "additionalNotes": None})
    assert req.additional_notes == ""


@pytest.mark.parametrize("url", ["", "   ", "ftp://linkedin.com/in/jane", "jane"])
def test_request_rejects_bad_urls(url):
    with pytest.raises(ValidationError):
        DossierRequest.model_validate({"linkedinUrl": url})


def test_run_result_codes():
    assert RunResult.timed_out("late").error_code == "timeout"
    assert RunResult.failed("boom").error_code == "failed"
    ok = RunResult.success(validate_dossier(valid_dossier()))
    assert ok.ok
    assert ok.error_code is None
