import asyncio
import json
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

from meetprep.llm import ModelReply
from meetprep.schemas import ToolCall


def valid_dossier(**overrides) -> Dict[str, Any]:
    dossier: Dict[str, Any] = {
        "status": "complete",
        "opener": "Congrats on the Series B. I saw your talk on pricing experiments last month.",
        "questions": [
            {"q": "How did the pricing team change after the raise?", "why": "Shows you read the news."},
            {"q": "What surprised you most moving from eng to product?", "why": "Career pivot in 2021."},
            {"q": "Which metric do you watch first every Monday?", "why": "Opens a practical thread."},
        ],
    }
    dossier.update(overrides)
    return dossier


def tool_call(name: str, arguments: Optional[Dict[str, Any]] = None, call_id: Optional[str] = None) -> ToolCall:
    return ToolCall(id=call_id or f"call_{uuid.uuid4().hex[:8]}", name=name, arguments=arguments or {})


def reply(*calls: ToolCall, text: Optional[str] = None) -> ModelReply:
    return ModelReply(text=text, tool_calls=list(calls), finish_reason="tool_calls" if calls else "stop")


ScriptItem = Union[ModelReply, Exception, Callable[[List[Dict[str, Any]]], Any]]


class FakeChatClient:
    """Replays a scripted list of model replies, one per respond() call.

    Once the script runs out the last entry is repeated. ``hang=True`` makes
    every respond() block until cancelled.
    """

    def __init__(
        self,
        script: Optional[List[ScriptItem]] = None,
        json_replies: Optional[Dict[str, Any]] = None,
        delay_seconds: float = 0.0,
        hang: bool = False,
    ) -> None:
        self.base_url = "http://model.test/v1"
        self.api_key = None
        self.model = "test-model"
        self.script = list(script or [reply(text="still thinking")])
        self.json_replies = json_replies or {}
        self.delay_seconds = delay_seconds
        self.hang = hang
        self.calls: List[Dict[str, Any]] = []
        self.json_calls: List[Dict[str, Any]] = []
        self.cancelled = 0
        self.closed = False

    async def respond(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.3,
        max_tokens: int = 4096,
    ) -> ModelReply:
        self.calls.append({"messages": messages, "tools": tools, "temperature": temperature})
        try:
            if self.hang:
                await asyncio.Event().wait()
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        idx = min(len(self.calls) - 1, len(self.script) - 1)
        item = self.script[idx]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            item = item(messages)
        return item

    async def complete_json(
        self,
        messages: List[Dict[str, Any]],
        temperature: float = 0.3,
        max_tokens: int = 1024,
    ) -> Dict[str, Any]:
        system_text = str(messages[0].get("content") or "") if messages else ""
        self.json_calls.append({"system": system_text, "temperature": temperature})
        for marker, value in self.json_replies.items():
            if marker in system_text:
                if isinstance(value, Exception):
                    raise value
                return json.loads(json.dumps(value))
        return {}

    async def close(self) -> None:
        self.closed = True


class FakeTavilyClient:
    def __init__(
        self,
        api_key: Optional[str] = "test-key",
        search_response: Optional[Dict[str, Any]] = None,
        delay_seconds: float = 0.0,
        responses: Optional[List[Optional[Dict[str, Any]]]] = None,
    ) -> None:
        self.api_key = api_key
        self.search_response = search_response
        self.delay_seconds = delay_seconds
        # per-call overrides; None falls through to the default answer
        self.responses = list(responses or [])
        self.search_calls: List[Dict[str, Any]] = []
        self.cancelled = 0
        self.closed = False

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: int = 5,
        topic: Optional[str] = None,
        include_answer: bool = False,
    ) -> Dict[str, Any]:
        self.search_calls.append(
            {
                "query": query,
                "search_depth": search_depth,
                "max_results": max_results,
                "include_answer": include_answer,
            }
        )
        try:
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        idx = len(self.search_calls) - 1
        if idx < len(self.responses) and self.responses[idx] is not None:
            return self.responses[idx]
        if self.search_response is not None:
            return self.search_response
        if not self.enabled:
            return {"error": "missing_api_key"}
        return {
            "answer": "Jane Doe is VP Product at Acme.",
            "results": [
                {"title": "Jane Doe - Acme", "url": "https://example.com/jane", "content": "Jane leads product."}
            ],
            "response_time": 0.4,
        }

    async def close(self) -> None:
        self.closed = True


class RecordingEmitter:
    """Stands in for StreamEmitter; keeps events instead of streaming them."""

    def __init__(self) -> None:
        self.events: List[tuple] = []
        self.results: List[Any] = []

    def progress(self, text: str) -> bool:
        self.events.append(("progress", text))
        return True

    def partial_field(self, name: str, value: Any, index: Optional[int] = None) -> bool:
        self.events.append(("partial", name, value, index))
        return True

    def finish(self, result: Any) -> bool:
        self.results.append(result)
        return True
