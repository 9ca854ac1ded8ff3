import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from . import prompts
from .controller import run_cancellable
from .errors import RunCancelledError, ToolError
from .schemas import MeetingContext, ToolCall, ToolResult
from .tavily import TavilyClient
from .validator import validate_dossier


logger = logging.getLogger("uvicorn.error")

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

RESEARCH_TOOL_NAME = "research"
CONTEXT_TOOL_NAME = "analyze_context"
SUMMARY_TOOL_NAME = "summarize"
COMPLETION_TOOL_NAME = "return_meeting_dossier"
DEFAULT_TOOL_TIMEOUT_S = 60.0
RESEARCH_SNIPPET_CHARS = 600


@dataclass
class Tool:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler
    timeout_s: Optional[float] = None
    start_text: Optional[str] = None
    done_text: Optional[str] = None

    def schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolRegistry:
    """Name -> capability map; read-only once the app has started."""

    def __init__(
        self,
        tools: Optional[Iterable[Tool]] = None,
        completion_tool: str = COMPLETION_TOOL_NAME,
        default_timeout_s: float = DEFAULT_TOOL_TIMEOUT_S,
    ):
        self._tools: Dict[str, Tool] = {}
        self.completion_tool = completion_tool
        self.default_timeout_s = default_timeout_s
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def is_completion(self, name: str) -> bool:
        return name == self.completion_tool

    def catalog(self) -> List[Dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values()]

    def list_tools(self) -> List[Dict[str, Any]]:
        return [
            {"name": t.name, "description": t.description, "completion": self.is_completion(t.name)}
            for t in self._tools.values()
        ]

    async def dispatch(
        self,
        call: ToolCall,
        cancel_event: Optional[asyncio.Event] = None,
        deadline_s: Optional[float] = None,
    ) -> ToolResult:
        tool = self._tools.get(call.name)
        if tool is None:
            return ToolResult.failure(f"unknown tool: {call.name}")
        if "_raw" in call.arguments:
            return ToolResult.failure(f"arguments for {call.name} were not a JSON object")
        limit = tool.timeout_s or self.default_timeout_s
        if deadline_s is not None:
            limit = min(limit, deadline_s)
        if limit <= 0:
            return ToolResult.failure(f"no time left to run {call.name}")
        started = time.monotonic()
        try:
            payload = await run_cancellable(tool.handler(dict(call.arguments)), cancel_event, limit)
        except RunCancelledError:
            raise
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %.1fs", call.name, limit)
            return ToolResult.failure(f"tool {call.name} timed out after {limit:g}s")
        except ToolError as exc:
            logger.warning("Tool %s failed: %s", call.name, exc.message)
            return ToolResult.failure(exc.message)
        except Exception as exc:
            logger.warning("Tool %s raised %s: %s", call.name, type(exc).__name__, exc)
            return ToolResult.failure(f"{call.name} failed: {exc}")
        logger.info("Tool %s finished in %.2fs", call.name, time.monotonic() - started)
        return ToolResult.success(payload)


# --- Built-in capabilities -------------------------------------------------


def _format_research(resp: Dict[str, Any]) -> str:
    parts: List[str] = []
    answer = str(resp.get("answer") or "").strip()
    if answer:
        parts.append(answer)
    for item in resp.get("results") or []:
        if not isinstance(item, dict):
            continue
        title = str(item.get("title") or "").strip()
        snippet = str(item.get("content") or "").strip()[:RESEARCH_SNIPPET_CHARS]
        url = str(item.get("url") or "").strip()
        parts.append(f"- {title} ({url})\n  {snippet}".rstrip())
    return "\n".join(parts)


def make_research_tool(tavily: TavilyClient, search_depth: str = "advanced", max_results: int = 5) -> Tool:
    async def handler(args: Dict[str, Any]) -> Dict[str, Any]:
        query = str(args.get("query") or "").strip()
        if not query:
            raise ToolError("research requires a non-empty query")
        if not tavily.enabled:
            raise ToolError("research unavailable: TAVILY_API_KEY is not set")
        started = time.monotonic()
        resp = await tavily.search(
            query,
            search_depth=search_depth,
            max_results=max_results,
            include_answer=True,
        )
        if resp.get("error"):
            detail = resp.get("detail") or resp.get("status_code") or ""
            raise ToolError(f"research failed: {resp['error']} {detail}".strip())
        content = _format_research(resp)
        if not content:
            raise ToolError(f"research found nothing for: {query}")
        sources = [
            {"title": item.get("title"), "url": item.get("url")}
            for item in resp.get("results") or []
            if isinstance(item, dict) and item.get("url")
        ]
        return {
            "content": content,
            "sources": sources,
            "usage": {
                "results": len(sources),
                "response_time": resp.get("response_time"),
                "elapsed_s": round(time.monotonic() - started, 3),
            },
        }

    return Tool(
        name=RESEARCH_TOOL_NAME,
        description=prompts.RESEARCH_GUIDE,
        parameters={
            "type": "object",
            "properties": {"query": {"type": "string", "description": "The search query to research"}},
            "required": ["query"],
        },
        handler=handler,
        start_text="Researching LinkedIn profile and background...",
        done_text="Research complete! Analyzing findings...",
    )


def make_context_tool(chat_client: Any) -> Tool:
    async def handler(args: Dict[str, Any]) -> Dict[str, Any]:
        url = str(args.get("linkedinUrl") or "").strip()
        notes = str(args.get("additionalNotes") or "")
        raw = await chat_client.complete_json(
            [
                {"role": "system", "content": prompts.CONTEXT_ANALYZER_SYSTEM},
                {"role": "user", "content": prompts.build_context_prompt(url, notes)},
            ],
            temperature=0.3,
            max_tokens=500,
        )
        try:
            context = MeetingContext.model_validate(raw)
        except ValidationError as exc:
            raise ToolError(f"meeting context analysis returned an invalid shape: {exc.error_count()} error(s)") from None
        return context.model_dump(by_alias=True)

    return Tool(
        name=CONTEXT_TOOL_NAME,
        description="Analyze meeting notes to understand context, type, and goals",
        parameters={
            "type": "object",
            "properties": {
                "linkedinUrl": {"type": "string", "description": "The LinkedIn URL of the person"},
                "additionalNotes": {"type": "string", "description": "Notes about the meeting or person"},
            },
            "required": ["linkedinUrl", "additionalNotes"],
        },
        handler=handler,
        start_text="Analyzing meeting context...",
        done_text="Meeting context analyzed.",
    )


def summary_temperature(notes: str) -> float:
    lowered = notes.lower()
    return 0.8 if "coffee" in lowered or "chat" in lowered else 0.7


def make_summary_tool(chat_client: Any) -> Tool:
    async def handler(args: Dict[str, Any]) -> Dict[str, Any]:
        research = str(args.get("researchData") or "").strip()
        if not research:
            raise ToolError("summarize requires researchData from the research tool")
        url = str(args.get("linkedinUrl") or "").strip()
        notes = str(args.get("additionalNotes") or "")
        return await chat_client.complete_json(
            [
                {"role": "system", "content": prompts.SUMMARY_SYSTEM},
                {"role": "user", "content": prompts.build_summary_prompt(research, url, notes)},
            ],
            temperature=summary_temperature(notes),
            max_tokens=1500,
        )

    return Tool(
        name=SUMMARY_TOOL_NAME,
        description="Generate a structured meeting dossier draft from research data",
        parameters={
            "type": "object",
            "properties": {
                "researchData": {"type": "string", "description": "Raw research data about the person"},
                "linkedinUrl": {"type": "string", "description": "The LinkedIn URL being researched"},
                "additionalNotes": {"type": "string", "description": "Additional notes about the meeting"},
            },
            "required": ["researchData", "linkedinUrl"],
        },
        handler=handler,
        start_text="Generating personalized meeting dossier...",
        done_text="Dossier draft ready, checking it over...",
    )


_SERIES_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {"label": {"type": "string"}, "value": {"type": "number"}},
        "required": ["label", "value"],
    },
}
_TIMELINE_ITEM_SCHEMA = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "period": {"type": "string"},
        "company": {"type": "string"},
        "start": {"type": "string"},
        "end": {"type": "string"},
        "notes": {"type": "string"},
    },
    "required": ["title", "period"],
}
DOSSIER_PARAMETERS: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "status": {"type": "string", "enum": ["complete"]},
        "opener": {"type": "string", "description": "Two-sentence personalised ice-breaker"},
        "questions": {
            "type": "array",
            "minItems": 3,
            "maxItems": 3,
            "items": {
                "type": "object",
                "properties": {"q": {"type": "string"}, "why": {"type": "string"}},
                "required": ["q", "why"],
            },
        },
        "analytics": {
            "type": "object",
            "properties": {
                "careerTimeline": {"type": "array", "items": _TIMELINE_ITEM_SCHEMA, "minItems": 1, "maxItems": 8},
                "focusBreakdown": {**_SERIES_SCHEMA, "minItems": 3, "maxItems": 7},
                "meetingFlow": {**_SERIES_SCHEMA, "minItems": 3, "maxItems": 5},
            },
        },
        "visualizations": {
            "type": "array",
            "minItems": 1,
            "maxItems": 2,
            "items": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": ["bar", "pie", "line", "sankey", "timeline"]},
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "data": {},
                },
                "required": ["type", "title", "data"],
            },
        },
    },
    "required": ["opener", "questions"],
}


def make_completion_tool() -> Tool:
    async def handler(args: Dict[str, Any]) -> Any:
        return validate_dossier(args)

    return Tool(
        name=COMPLETION_TOOL_NAME,
        description=(
            "Call this when you have finished researching. MUST supply the final dossier; "
            "this ends the task."
        ),
        parameters=DOSSIER_PARAMETERS,
        handler=handler,
        start_text="Finalizing meeting dossier...",
        done_text="Meeting dossier ready!",
    )


def build_default_registry(chat_client: Any, tavily: TavilyClient, settings: Any) -> ToolRegistry:
    return ToolRegistry(
        [
            make_research_tool(
                tavily,
                search_depth=settings.research_search_depth,
                max_results=settings.research_max_results,
            ),
            make_context_tool(chat_client),
            make_summary_tool(chat_client),
            make_completion_tool(),
        ],
        default_timeout_s=settings.tool_timeout_s,
    )
