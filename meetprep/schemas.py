import json
import uuid
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator


MeetingType = Literal[
    "coffee_chat",
    "business_meeting",
    "networking",
    "interview",
    "casual_meetup",
    "formal_discussion",
]
VisualizationType = Literal["bar", "pie", "line", "sankey", "timeline"]
SERIES_TYPES = {"bar", "pie", "line"}


class DossierRequest(BaseModel):
    linkedin_url: str = Field(alias="linkedinUrl")
    additional_notes: str = Field(default="", alias="additionalNotes")

    model_config = {"populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "additionalNotes" not in data and "additional_notes" not in data and "notes" in data:
            data["additionalNotes"] = data.pop("notes")
        for key in ("additionalNotes", "additional_notes"):
            if key in data and data[key] is None:
                data[key] = ""
        return data

    @field_validator("linkedin_url")
    @classmethod
    def check_url(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("linkedinUrl is required")
        if not cleaned.lower().startswith(("http://", "https://")):
            raise ValueError("linkedinUrl must be an http(s) URL")
        return cleaned


class MeetingContext(BaseModel):
    meeting_type: MeetingType = Field(alias="meetingType")
    formality_level: int = Field(alias="formalityLevel", ge=1, le=5)
    primary_goals: List[str] = Field(default_factory=list, alias="primaryGoals")
    suggested_tone: str = Field(alias="suggestedTone")
    focus_areas: List[str] = Field(default_factory=list, alias="focusAreas")
    context_summary: str = Field(alias="contextSummary")

    model_config = {"populate_by_name": True}


# --- Dossier ---------------------------------------------------------------


class Question(BaseModel):
    q: str
    why: str

    @field_validator("q", "why")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value.strip()


class SeriesDatum(BaseModel):
    label: str
    value: float


class TimelineItem(BaseModel):
    title: str
    period: str
    company: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    notes: Optional[str] = None


class SankeyNode(BaseModel):
    name: str

    model_config = {"extra": "allow"}


class SankeyLink(BaseModel):
    source: int
    target: int
    value: float


class SankeyData(BaseModel):
    nodes: List[SankeyNode] = Field(min_length=1)
    links: List[SankeyLink] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_link_indices(self) -> "SankeyData":
        count = len(self.nodes)
        for idx, link in enumerate(self.links):
            for end in ("source", "target"):
                node_idx = getattr(link, end)
                if node_idx < 0 or node_idx >= count:
                    raise ValueError(
                        f"links[{idx}].{end}={node_idx} is outside nodes (0..{count - 1})"
                    )
        return self


_SERIES_ADAPTER = TypeAdapter(Annotated[List[SeriesDatum], Field(min_length=1)])
_TIMELINE_ADAPTER = TypeAdapter(Annotated[List[TimelineItem], Field(min_length=1)])
_SANKEY_ADAPTER = TypeAdapter(SankeyData)


class Visualization(BaseModel):
    type: VisualizationType
    title: str
    description: Optional[str] = None
    data: Any

    @model_validator(mode="after")
    def check_data_shape(self) -> "Visualization":
        # data is normalised to plain JSON so the shape survives model_dump
        if self.type in SERIES_TYPES:
            adapter: TypeAdapter = _SERIES_ADAPTER
            expected = "a list of {label, value}"
        elif self.type == "sankey":
            adapter = _SANKEY_ADAPTER
            expected = "{nodes[], links[{source, target, value}]}"
        else:
            adapter = _TIMELINE_ADAPTER
            expected = "a list of {title, period}"
        try:
            parsed = adapter.validate_python(self.data)
        except ValueError as exc:
            raise ValueError(f"{self.type} data must be {expected}: {_short_error(exc)}") from None
        self.data = adapter.dump_python(parsed, exclude_none=True)
        return self


class Analytics(BaseModel):
    career_timeline: List[TimelineItem] = Field(alias="careerTimeline", min_length=1, max_length=8)
    focus_breakdown: List[SeriesDatum] = Field(alias="focusBreakdown", min_length=3, max_length=7)
    meeting_flow: List[SeriesDatum] = Field(alias="meetingFlow", min_length=3, max_length=5)

    model_config = {"populate_by_name": True}


class Dossier(BaseModel):
    opener: str
    questions: List[Question] = Field(min_length=3, max_length=3)
    analytics: Optional[Analytics] = None
    visualizations: Optional[Annotated[List[Visualization], Field(min_length=1, max_length=2)]] = None

    model_config = {"extra": "ignore"}

    @field_validator("opener")
    @classmethod
    def opener_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    def to_report(self) -> Dict[str, Any]:
        return {"status": "complete", **self.model_dump(by_alias=True, exclude_none=True)}


def _short_error(exc: Exception) -> str:
    errors = getattr(exc, "errors", None)
    if callable(errors):
        parts = []
        for err in errors():
            loc = ".".join(str(p) for p in err.get("loc", ()))
            parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
        return "; ".join(parts[:3])
    return str(exc)


# --- Conversation ----------------------------------------------------------


class ToolCall(BaseModel):
    id: str = Field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    ok: bool
    payload: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, payload: Any) -> "ToolResult":
        return cls(ok=True, payload=payload)

    @classmethod
    def failure(cls, message: str) -> "ToolResult":
        return cls(ok=False, error=message)

    def content(self) -> str:
        if not self.ok:
            return json.dumps({"error": self.error}, ensure_ascii=True)
        payload = self.payload
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(by_alias=True, exclude_none=True)
        if isinstance(payload, str):
            return payload
        return json.dumps(payload, ensure_ascii=True, default=str)


class UserTurn(BaseModel):
    kind: Literal["user"] = "user"
    text: str


class ModelTurn(BaseModel):
    kind: Literal["model"] = "model"
    text: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)


class ToolResultTurn(BaseModel):
    kind: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    tool_name: str
    result: ToolResult


Turn = Union[UserTurn, ModelTurn, ToolResultTurn]


class Conversation:
    """Append-only transcript of one run, in causal order."""

    def __init__(self) -> None:
        self._turns: List[Turn] = []

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def turns(self) -> Tuple[Turn, ...]:
        return tuple(self._turns)

    def append(self, turn: Turn) -> None:
        if isinstance(turn, ModelTurn) and self.pending_calls():
            raise RuntimeError("model turn appended while tool calls are unanswered")
        if isinstance(turn, ToolResultTurn):
            pending = {call.id for call in self.pending_calls()}
            if turn.tool_call_id not in pending:
                raise RuntimeError(f"tool result for unknown or answered call {turn.tool_call_id}")
        self._turns.append(turn)

    def pending_calls(self) -> List[ToolCall]:
        answered = {t.tool_call_id for t in self._turns if isinstance(t, ToolResultTurn)}
        pending: List[ToolCall] = []
        for turn in self._turns:
            if isinstance(turn, ModelTurn):
                pending.extend(call for call in turn.tool_calls if call.id not in answered)
        return pending

    def tool_results(self, tool_name: Optional[str] = None) -> List[ToolResultTurn]:
        return [
            t
            for t in self._turns
            if isinstance(t, ToolResultTurn) and (tool_name is None or t.tool_name == tool_name)
        ]

    def to_messages(self, system_prompt: Optional[str] = None) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for turn in self._turns:
            if isinstance(turn, UserTurn):
                messages.append({"role": "user", "content": turn.text})
            elif isinstance(turn, ModelTurn):
                message: Dict[str, Any] = {"role": "assistant", "content": turn.text or ""}
                if turn.tool_calls:
                    message["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.arguments, ensure_ascii=True),
                            },
                        }
                        for call in turn.tool_calls
                    ]
                messages.append(message)
            else:
                messages.append(
                    {"role": "tool", "tool_call_id": turn.tool_call_id, "content": turn.result.content()}
                )
        return messages


# --- Run outcome -----------------------------------------------------------


class RunOutcome(str, Enum):
    SUCCESS = "success"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class RunResult(BaseModel):
    outcome: RunOutcome
    dossier: Optional[Dossier] = None
    reason: Optional[str] = None

    model_config = {"frozen": True}

    @classmethod
    def success(cls, dossier: Dossier) -> "RunResult":
        return cls(outcome=RunOutcome.SUCCESS, dossier=dossier)

    @classmethod
    def timed_out(cls, reason: str) -> "RunResult":
        return cls(outcome=RunOutcome.TIMED_OUT, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> "RunResult":
        return cls(outcome=RunOutcome.FAILED, reason=reason)

    @property
    def ok(self) -> bool:
        return self.outcome == RunOutcome.SUCCESS

    @property
    def error_code(self) -> Optional[str]:
        if self.ok:
            return None
        return "timeout" if self.outcome == RunOutcome.TIMED_OUT else "failed"
