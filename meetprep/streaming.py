import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from .schemas import RunResult


logger = logging.getLogger("uvicorn.error")

HEARTBEAT_LINE = ":\n\n"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_format(data: Dict[str, Any], event: Optional[str] = None) -> str:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data, ensure_ascii=True)}\n\n"


@dataclass
class StreamEvent:
    kind: str
    data: Optional[Dict[str, Any]] = None
    event: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.kind in ("done", "error")

    def encode(self) -> str:
        if self.kind == "heartbeat":
            return HEARTBEAT_LINE
        return sse_format(self.data or {}, event=self.event)


class StreamEmitter:
    """Ordered push stream for one run.

    Exactly one terminal event is ever queued and nothing is queued after it.
    The heartbeat task is stopped the moment the terminal event is scheduled
    and again when the stream scope exits, whichever comes first.
    """

    def __init__(self, heartbeat_interval_s: float = 25.0, run_id: Optional[str] = None):
        self.heartbeat_interval_s = heartbeat_interval_s
        self.run_id = run_id
        self.written: List[StreamEvent] = []
        self._queue: "asyncio.Queue[Optional[StreamEvent]]" = asyncio.Queue()
        self._terminal_sent = False
        self._closed = False
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None

    @property
    def terminal_sent(self) -> bool:
        return self._terminal_sent

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def heartbeat_task(self) -> Optional[asyncio.Task]:
        return self._heartbeat_task

    @property
    def run_task(self) -> Optional[asyncio.Task]:
        return self._run_task

    def _push(self, event: StreamEvent) -> bool:
        if self._terminal_sent or self._closed:
            logger.debug("Run %s dropped %s event after stream end", self.run_id, event.kind)
            return False
        self._queue.put_nowait(event)
        return True

    def progress(self, text: str) -> bool:
        return self._push(StreamEvent("progress", {"text": text}))

    def partial_field(self, name: str, value: Any, index: Optional[int] = None) -> bool:
        data: Dict[str, Any] = {f"partial_{name}": value}
        if index is not None:
            data[f"{name}_index"] = index
        return self._push(StreamEvent("partial", data))

    def heartbeat(self) -> bool:
        return self._push(StreamEvent("heartbeat"))

    def finish(self, result: RunResult) -> bool:
        if self._terminal_sent or self._closed:
            return False
        if result.ok and result.dossier is not None:
            event = StreamEvent("done", {"done": True, "report": result.dossier.to_report()})
        else:
            event = StreamEvent(
                "error",
                {"error": result.reason or "run failed", "code": result.error_code or "failed"},
                event="error",
            )
        self._stop_heartbeat()
        self._queue.put_nowait(event)
        self._queue.put_nowait(None)
        self._terminal_sent = True
        return True

    def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        if task is not None and not task.done():
            task.cancel()

    async def _heartbeat_loop(self) -> None:
        while not self._terminal_sent and not self._closed:
            await asyncio.sleep(self.heartbeat_interval_s)
            self.heartbeat()

    async def _guarded_run(self, run: Callable[[], Awaitable[Any]], watchdog_s: Optional[float]) -> None:
        try:
            if watchdog_s:
                await asyncio.wait_for(run(), timeout=watchdog_s)
            else:
                await run()
        except asyncio.TimeoutError:
            logger.warning("Run %s hit the watchdog after %.1fs", self.run_id, watchdog_s or 0)
            self.finish(RunResult.timed_out(f"run did not finish within {watchdog_s:g}s"))
        except Exception as exc:
            logger.exception("Run %s crashed", self.run_id)
            self.finish(RunResult.failed(f"internal error: {exc}"))
        finally:
            if not self._terminal_sent and not self._closed:
                self.finish(RunResult.failed("run ended without a result"))

    async def stream(
        self,
        run: Callable[[], Awaitable[Any]],
        watchdog_s: Optional[float] = None,
        on_close: Optional[Callable[[], None]] = None,
    ) -> AsyncIterator[str]:
        """Run ``run`` and the heartbeat under one scope, yielding SSE text."""
        self._run_task = asyncio.create_task(self._guarded_run(run, watchdog_s))
        if self.heartbeat_interval_s and self.heartbeat_interval_s > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        try:
            while True:
                event = await self._queue.get()
                if event is None:
                    break
                if event.kind == "heartbeat" and self._terminal_sent:
                    continue
                self.written.append(event)
                yield event.encode()
        finally:
            self._closed = True
            self._stop_heartbeat()
            if on_close is not None:
                on_close()
            if not self._run_task.done():
                logger.info("Run %s stream closed before the run finished; cancelling", self.run_id)
                self._run_task.cancel()
