import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .controller import StepController
from .errors import InvalidRequestError, MeetPrepError
from .llm import ChatClient
from .orchestrator import Orchestrator, new_run_id
from .prompts import build_seed_prompt
from .schemas import DossierRequest, RunOutcome
from .streaming import SSE_HEADERS, StreamEmitter
from .tavily import TavilyClient
from .tools import ToolRegistry, build_default_registry


logger = logging.getLogger("uvicorn.error")

RESULT_STATUS = {RunOutcome.TIMED_OUT: 504, RunOutcome.FAILED: 502}
DISCONNECT_POLL_S = 0.5


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_chat_client(request: Request) -> ChatClient:
    return request.app.state.chat_client


def get_tavily_client(request: Request) -> TavilyClient:
    return request.app.state.tavily_client


def get_registry(request: Request) -> ToolRegistry:
    return request.app.state.registry


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def check_request(payload: DossierRequest, settings: AppSettings) -> None:
    if len(payload.additional_notes) > settings.notes_max_chars:
        raise InvalidRequestError(f"additionalNotes must be at most {settings.notes_max_chars} characters.")


def prepare_run(
    payload: DossierRequest,
    settings: AppSettings,
    chat_client: Any,
    registry: ToolRegistry,
) -> tuple:
    check_request(payload, settings)
    run_id = new_run_id()
    orchestrator = Orchestrator(
        chat_client,
        registry,
        temperature=settings.model_temperature,
        max_tokens=settings.model_max_tokens,
        model_timeout_s=settings.model_timeout_s,
        stream_partials=settings.stream_partials,
        run_id=run_id,
    )
    controller = StepController(settings.max_steps, settings.run_timeout_s)
    seed = build_seed_prompt(payload.linkedin_url, payload.additional_notes)
    logger.info(
        "Run %s started for %s (notes=%s chars, max_steps=%s)",
        run_id,
        payload.linkedin_url,
        len(payload.additional_notes),
        settings.max_steps,
    )
    return orchestrator, controller, seed


def _first_error_message(exc: Any) -> str:
    errors = exc.errors() if hasattr(exc, "errors") else []
    if not errors:
        return "Invalid request."
    err = errors[0]
    loc = [str(p) for p in err.get("loc", ()) if p != "body"]
    msg = str(err.get("msg") or "invalid value")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    return f"{'.'.join(loc)}: {msg}" if loc else msg


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": _first_error_message(exc)})


async def handle_meetprep_error(request: Request, exc: MeetPrepError) -> JSONResponse:
    status = 400 if isinstance(exc, InvalidRequestError) else 500
    return JSONResponse(status_code=status, content=exc.to_payload())


router = APIRouter()


@router.get("/health")
async def health(settings: AppSettings = Depends(get_settings), tavily_client: TavilyClient = Depends(get_tavily_client)):
    return {"ok": True, "model": settings.model_id, "research_enabled": tavily_client.enabled}


@router.get("/api/tools")
async def list_tools(registry: ToolRegistry = Depends(get_registry)):
    return {"tools": registry.list_tools()}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    chat_client: ChatClient = Depends(get_chat_client),
    tavily_client: TavilyClient = Depends(get_tavily_client),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise InvalidRequestError("Settings body must be a JSON object.")
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **body})
    except ValidationError as exc:
        raise InvalidRequestError(_first_error_message(exc)) from None
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    chat_client.base_url = new_settings.model_base_url.rstrip("/")
    chat_client.api_key = new_settings.model_api_key
    chat_client.model = new_settings.model_id
    tavily_client.api_key = new_settings.tavily_api_key
    request.app.state.registry = build_default_registry(chat_client, tavily_client, new_settings)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.post("/api/report")
async def create_report(
    payload: DossierRequest,
    settings: AppSettings = Depends(get_settings),
    chat_client: ChatClient = Depends(get_chat_client),
    registry: ToolRegistry = Depends(get_registry),
):
    orchestrator, controller, seed = prepare_run(payload, settings, chat_client, registry)
    emitter = StreamEmitter(settings.heartbeat_interval_s, run_id=orchestrator.run_id)

    async def run() -> None:
        await orchestrator.run(seed, controller, emitter)

    return StreamingResponse(
        emitter.stream(
            run,
            watchdog_s=settings.run_timeout_s + settings.watchdog_grace_s,
            on_close=controller.cancel,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


async def cancel_on_disconnect(request: Request, controller: StepController, poll_s: float = DISCONNECT_POLL_S) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(poll_s)
    logger.info("Client disconnected from a sync report; cancelling the run")
    controller.cancel()


@router.post("/api/report/sync")
async def create_report_sync(
    payload: DossierRequest,
    request: Request,
    settings: AppSettings = Depends(get_settings),
    chat_client: ChatClient = Depends(get_chat_client),
    registry: ToolRegistry = Depends(get_registry),
):
    orchestrator, controller, seed = prepare_run(payload, settings, chat_client, registry)
    watchdog_s = settings.run_timeout_s + settings.watchdog_grace_s
    watcher = asyncio.create_task(cancel_on_disconnect(request, controller))
    try:
        result = await asyncio.wait_for(orchestrator.run(seed, controller), timeout=watchdog_s)
    except asyncio.TimeoutError:
        logger.warning("Run %s hit the watchdog after %.1fs", orchestrator.run_id, watchdog_s)
        return JSONResponse(
            status_code=504,
            content={"error": f"run did not finish within {watchdog_s:g}s", "code": "timeout"},
        )
    except Exception as exc:
        logger.exception("Run %s crashed", orchestrator.run_id)
        return JSONResponse(status_code=500, content={"error": f"internal error: {exc}", "code": "failed"})
    finally:
        watcher.cancel()
    if result.ok and result.dossier is not None:
        return result.dossier.to_report()
    return JSONResponse(
        status_code=RESULT_STATUS.get(result.outcome, 500),
        content={"error": result.reason, "code": result.error_code},
    )


def create_app(
    settings: AppSettings,
    *,
    chat_client: Optional[Any] = None,
    tavily_client: Optional[Any] = None,
    registry: Optional[ToolRegistry] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "meetprep ready: model=%s research=%s max_steps=%s",
            app.state.settings.model_id,
            "on" if app.state.tavily_client.enabled else "off",
            app.state.settings.max_steps,
        )
        try:
            yield
        finally:
            await app.state.chat_client.close()
            await app.state.tavily_client.close()

    logging.getLogger("uvicorn.error").setLevel(settings.log_level.upper())
    app = FastAPI(title="meetprep dossier agent", lifespan=lifespan)
    app.state.settings = settings
    app.state.chat_client = chat_client or ChatClient(
        settings.model_base_url,
        api_key=settings.model_api_key,
        model=settings.model_id,
        max_output_tokens=settings.model_max_tokens,
        timeout=settings.model_timeout_s,
    )
    app.state.tavily_client = tavily_client or TavilyClient(settings.tavily_api_key, timeout=settings.tool_timeout_s)
    app.state.registry = registry or build_default_registry(
        app.state.chat_client, app.state.tavily_client, settings
    )
    app.state.config_path = config_path or CONFIG_PATH
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(MeetPrepError, handle_meetprep_error)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("MEETPREP_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "meetprep.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
            log_level=settings.log_level,
        )
    except KeyboardInterrupt:
        pass
