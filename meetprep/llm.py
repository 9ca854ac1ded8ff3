import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .errors import TransportError
from .schemas import ToolCall


logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant", "tool"}


@dataclass
class ModelReply:
    text: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)


def _decode_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if raw is None or raw == "":
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {"_raw": str(raw)}
    if isinstance(parsed, dict):
        return parsed
    return {"_raw": str(raw)}


def parse_reply(data: Any) -> ModelReply:
    """Turn an OpenAI-style chat completion body into a ModelReply."""
    if not isinstance(data, dict):
        raise TransportError("model response is not a JSON object")
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        raise TransportError("model response has no choices")
    message = choices[0].get("message") or {}
    text = message.get("content")
    if isinstance(text, list):
        text = "".join(str(part.get("text") or "") for part in text if isinstance(part, dict))
    calls: List[ToolCall] = []
    for raw_call in message.get("tool_calls") or []:
        if not isinstance(raw_call, dict):
            continue
        fn = raw_call.get("function") or {}
        name = str(fn.get("name") or "").strip()
        if not name:
            continue
        call_kwargs: Dict[str, Any] = {"name": name, "arguments": _decode_arguments(fn.get("arguments"))}
        if raw_call.get("id"):
            call_kwargs["id"] = str(raw_call["id"])
        calls.append(ToolCall(**call_kwargs))
    return ModelReply(
        text=text or None,
        tool_calls=calls,
        finish_reason=choices[0].get("finish_reason"),
        usage=data.get("usage") or {},
    )


class ChatClient:
    """OpenAI-compatible chat completions client with tool calling."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        model: str = "gpt-4.1",
        max_output_tokens: Optional[int] = None,
        timeout: float = 120.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _normalize_error_text(self, detail: str) -> str:
        text = detail or ""
        for _ in range(2):
            try:
                parsed = json.loads(text)
            except Exception:
                break
            if isinstance(parsed, dict):
                found = False
                for key in ("error", "detail", "message"):
                    val = parsed.get(key)
                    if isinstance(val, dict):
                        val = val.get("message")
                    if isinstance(val, str) and val.strip():
                        text = val
                        found = True
                        break
                if not found:
                    break
            elif isinstance(parsed, str):
                text = parsed
            else:
                break
        return text

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict) or msg.get("role") not in ALLOWED_ROLES:
                continue
            role = msg["role"]
            content = msg.get("content")
            if role == "assistant" and msg.get("tool_calls"):
                sanitized.append({"role": role, "content": content or "", "tool_calls": msg["tool_calls"]})
                continue
            if role == "assistant" and (content is None or isinstance(content, str)):
                # assistant turns are kept even when empty
                sanitized.append({"role": role, "content": content or ""})
                continue
            if role == "tool":
                if not msg.get("tool_call_id"):
                    continue
                sanitized.append(
                    {"role": role, "tool_call_id": msg["tool_call_id"], "content": content or ""}
                )
                continue
            if content is None or (isinstance(content, str) and not content.strip()):
                continue
            if not isinstance(content, (str, list)):
                content = json.dumps(content, ensure_ascii=True)
            sanitized.append({"role": role, "content": content})
        return sanitized

    async def chat_completion(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.3,
        max_tokens: int = 1024,
        response_format: Optional[dict] = None,
    ) -> Dict[str, Any]:
        final_max_tokens = max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_tokens, self.max_output_tokens)
        payload: Dict[str, Any] = {
            "model": model or self.model,
            "messages": self._sanitize_messages(messages),
            "temperature": temperature,
            "max_tokens": final_max_tokens,
            "stream": False,
        }
        if not payload["messages"]:
            raise ValueError("messages must include at least one non-empty entry")
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
            payload["parallel_tool_calls"] = False
        if response_format:
            payload["response_format"] = response_format
        url = f"{self.base_url}/chat/completions"
        try:
            resp = await self.client.post(url, json=payload, headers=self._headers())
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = self._normalize_error_text(self._extract_error_detail(exc.response))
            status = exc.response.status_code
            logger.warning("Model endpoint returned HTTP %s: %s", status, detail[:300])
            raise TransportError(f"model endpoint returned HTTP {status}: {detail}", status_code=status) from None
        except httpx.RequestError as exc:
            logger.warning("Model endpoint request failed: %s", exc)
            raise TransportError(f"model endpoint unreachable: {exc}") from None
        try:
            return resp.json()
        except ValueError:
            raise TransportError("model endpoint returned a non-JSON body") from None

    async def respond(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.3,
        max_tokens: int = 4096,
    ) -> ModelReply:
        data = await self.chat_completion(
            messages,
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return parse_reply(data)

    async def complete_json(
        self,
        messages: List[Dict[str, Any]],
        temperature: float = 0.3,
        max_tokens: int = 1024,
    ) -> Dict[str, Any]:
        """Single JSON-mode completion; used by the structured tools."""
        data = await self.chat_completion(
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
        )
        reply = parse_reply(data)
        text = (reply.text or "").strip()
        if text.startswith("```"):
            text = text.strip("`")
            if text.lower().startswith("json"):
                text = text[4:]
        try:
            parsed = json.loads(text)
        except ValueError:
            raise ValueError(f"model did not return JSON: {text[:200]}") from None
        if not isinstance(parsed, dict):
            raise ValueError("model returned JSON that is not an object")
        return parsed

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
