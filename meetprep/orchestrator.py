import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, List, Optional, Set

from . import prompts
from .controller import StepController, run_cancellable
from .errors import RunCancelledError, RunTimeoutError, TransportError
from .llm import ModelReply
from .schemas import (
    Conversation,
    Dossier,
    ModelTurn,
    RunResult,
    ToolCall,
    ToolResult,
    ToolResultTurn,
    UserTurn,
)
from .tools import SUMMARY_TOOL_NAME, ToolRegistry
from .validator import extract_dossier_from_text


logger = logging.getLogger("uvicorn.error")

SKIPPED_CALL_ERROR = "skipped: run already complete"


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


class RunPhase(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    DISPATCHING_TOOLS = "dispatching_tools"
    TERMINATED = "terminated"


class Orchestrator:
    """Drives one conversation to a single RunResult.

    Tool calls within a model turn run strictly in order; the next model
    request is only issued once every call of the previous turn has a result
    in the transcript. The emitter, when given, only observes.
    """

    def __init__(
        self,
        chat_client: Any,
        registry: ToolRegistry,
        *,
        system_prompt: str = prompts.SYSTEM_PROMPT,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        model_timeout_s: float = 120.0,
        stream_partials: bool = True,
        run_id: Optional[str] = None,
    ):
        self.chat_client = chat_client
        self.registry = registry
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.model_timeout_s = model_timeout_s
        self.stream_partials = stream_partials
        self.run_id = run_id or new_run_id()
        self.conversation = Conversation()
        self.model_calls = 0
        self._phase = RunPhase.AWAITING_MODEL
        self._result: Optional[RunResult] = None
        self._partials_sent: Set[str] = set()
        self._last_rejection: Optional[str] = None

    @property
    def state(self) -> RunPhase:
        return self._phase

    @property
    def result(self) -> Optional[RunResult]:
        return self._result

    def _settle(self, result: RunResult) -> None:
        if self._result is not None:
            raise RuntimeError(f"run {self.run_id} already settled as {self._result.outcome.value}")
        self._result = result

    async def run(self, seed_prompt: str, controller: StepController, emitter: Any = None) -> RunResult:
        if self.conversation.turns:
            raise RuntimeError("an Orchestrator instance drives exactly one run")
        self.conversation.append(UserTurn(text=seed_prompt))
        try:
            while self._result is None and controller.permits_next_step():
                step = controller.record_step()
                logger.info("Run %s step %s/%s", self.run_id, step, controller.max_steps)
                self._phase = RunPhase.AWAITING_MODEL
                reply = await self._call_model(controller)
                if reply.tool_calls:
                    calls = self._unique_calls(reply.tool_calls)
                    self.conversation.append(ModelTurn(text=reply.text, tool_calls=calls))
                    self._phase = RunPhase.DISPATCHING_TOOLS
                    await self._dispatch_turn(calls, controller, emitter)
                    continue
                self.conversation.append(ModelTurn(text=reply.text))
                rejections: List[str] = []
                dossier = extract_dossier_from_text(reply.text, rejections)
                if dossier is not None:
                    logger.info("Run %s finished through a JSON text reply", self.run_id)
                    self._emit_partials(dossier, emitter)
                    self._settle(RunResult.success(dossier))
                elif rejections:
                    self._last_rejection = rejections[-1]
                    logger.info("Run %s dossier in text rejected: %s", self.run_id, rejections[-1])
                    self.conversation.append(UserTurn(text=prompts.build_rejection_nudge(rejections[-1])))
                else:
                    self.conversation.append(UserTurn(text=prompts.CONTINUE_NUDGE))
            if self._result is None:
                self._settle(self._stop_result(controller))
        except RunCancelledError:
            logger.info("Run %s cancelled by caller", self.run_id)
            self._settle(RunResult.failed("cancelled by caller"))
        except RunTimeoutError as exc:
            self._settle(RunResult.timed_out(exc.message))
        except TransportError as exc:
            logger.warning("Run %s transport failure: %s", self.run_id, exc.message)
            self._settle(RunResult.failed(exc.message))
        except asyncio.CancelledError:
            # the task itself was cancelled: stream closed or watchdog fired
            if self._result is None:
                reason = "cancelled by caller" if controller.cancelled else "run cancelled before it finished"
                logger.info("Run %s %s", self.run_id, reason)
                self._settle(RunResult.failed(reason))
            raise
        finally:
            self._phase = RunPhase.TERMINATED

        result = self._result
        logger.info(
            "Run %s terminated: %s after %s model call(s)%s",
            self.run_id,
            result.outcome.value,
            self.model_calls,
            f" ({result.reason})" if result.reason else "",
        )
        if emitter is not None:
            emitter.finish(result)
        return result

    def _stop_result(self, controller: StepController) -> RunResult:
        if controller.cancelled:
            return RunResult.failed("cancelled by caller")
        reason = controller.stop_reason() or "run stopped without a dossier"
        if self._last_rejection:
            reason = f"{reason}; last dossier was rejected: {self._last_rejection}"
        return RunResult.timed_out(reason)

    async def _call_model(self, controller: StepController) -> ModelReply:
        remaining = controller.remaining()
        if remaining <= 0:
            raise RunTimeoutError(controller.stop_reason() or "run deadline elapsed")
        timeout = min(self.model_timeout_s, remaining)
        messages = self.conversation.to_messages(self.system_prompt)
        self.model_calls += 1
        try:
            return await run_cancellable(
                self.chat_client.respond(
                    messages,
                    tools=self.registry.catalog(),
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                ),
                controller.cancel_event,
                timeout,
            )
        except asyncio.TimeoutError:
            if timeout >= remaining:
                raise RunTimeoutError(
                    f"run deadline of {controller.timeout_s:g}s elapsed while waiting for the model"
                ) from None
            raise TransportError(f"model call timed out after {timeout:g}s") from None

    def _unique_calls(self, calls: List[ToolCall]) -> List[ToolCall]:
        # some local models reuse call ids across turns
        seen = {
            call.id
            for turn in self.conversation.turns
            if isinstance(turn, ModelTurn)
            for call in turn.tool_calls
        }
        unique: List[ToolCall] = []
        for call in calls:
            if call.id in seen:
                call = ToolCall(name=call.name, arguments=call.arguments)
            seen.add(call.id)
            unique.append(call)
        return unique

    async def _dispatch_turn(self, calls: List[ToolCall], controller: StepController, emitter: Any) -> None:
        for call in calls:
            if self._result is not None:
                self._answer(call, ToolResult.failure(SKIPPED_CALL_ERROR))
                continue
            tool = self.registry.get(call.name)
            if emitter is not None and tool is not None and tool.start_text:
                emitter.progress(tool.start_text)
            result = await self.registry.dispatch(
                call,
                cancel_event=controller.cancel_event,
                deadline_s=controller.remaining(),
            )
            self._answer(call, result)
            if not result.ok:
                if self.registry.is_completion(call.name):
                    self._last_rejection = result.error
                    logger.info("Run %s dossier rejected: %s", self.run_id, result.error)
                continue
            if emitter is not None and tool is not None and tool.done_text:
                emitter.progress(tool.done_text)
            if call.name == SUMMARY_TOOL_NAME or self.registry.is_completion(call.name):
                self._emit_partials(result.payload, emitter)
            if self.registry.is_completion(call.name) and isinstance(result.payload, Dossier):
                self._settle(RunResult.success(result.payload))

    def _answer(self, call: ToolCall, result: ToolResult) -> None:
        self.conversation.append(ToolResultTurn(tool_call_id=call.id, tool_name=call.name, result=result))

    def _emit_partials(self, payload: Any, emitter: Any) -> None:
        if emitter is None or not self.stream_partials:
            return
        if isinstance(payload, Dossier):
            payload = payload.model_dump(by_alias=True)
        if not isinstance(payload, dict):
            return
        opener = payload.get("opener")
        if isinstance(opener, str) and opener.strip() and "opener" not in self._partials_sent:
            self._partials_sent.add("opener")
            emitter.partial_field("opener", opener.strip())
        questions = payload.get("questions")
        if not isinstance(questions, list):
            return
        for idx, item in enumerate(questions[:3]):
            key = f"question:{idx}"
            if key in self._partials_sent or not isinstance(item, dict):
                continue
            q = str(item.get("q") or "").strip()
            why = str(item.get("why") or "").strip()
            if not q:
                continue
            self._partials_sent.add(key)
            emitter.partial_field("question", {"q": q, "why": why}, index=idx)
