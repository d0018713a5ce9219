from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, ValidationError, field_validator

from dashboard_agent.logging_config import setup_logging, get_logger
from dashboard_agent.orchestration.models import StreamEvent
from dashboard_agent.orchestration.query_planner import describe_plan
from dashboard_agent.services.dashboard_service import DashboardService
from dashboard_agent.config import (
    LOG_LEVEL,
    ENABLE_PII_REDACTION,
    CORS_ORIGINS,
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_HEADERS,
    CORS_MAX_AGE
)

# Setup logging with PII redaction
setup_logging(log_level=LOG_LEVEL, enable_pii_redaction=ENABLE_PII_REDACTION)
logger = get_logger("dashboard_agent")

MAX_PROMPT_LENGTH = 5000
NDJSON_MEDIA_TYPE = "application/x-ndjson"


class DashboardRequest(BaseModel):
    prompt: str
    session_id: str | None = None
    params: Dict[str, Any] = Field(default_factory=dict, description="User-supplied parameters")
    auth_profile: str | None = None
    config: Dict[str, Any] | None = Field(default=None, description="Per-plan executor overrides")

    @field_validator('prompt')
    @classmethod
    def validate_prompt(cls, v):
        if not v or not v.strip():
            raise ValueError('Prompt cannot be empty')
        if len(v) > MAX_PROMPT_LENGTH:
            raise ValueError(f'Prompt too long (max {MAX_PROMPT_LENGTH} characters)')
        return v


class ResumeRequest(BaseModel):
    params: Dict[str, Any] = Field(default_factory=dict)
    auth_profile: str | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown events."""
    logger.info("Starting Dashboard Agent API...")
    yield
    logger.info("Shutdown complete")


app = FastAPI(
    title="Dashboard Agent API",
    description="Plans natural-language dashboard requests and streams their execution",
    version="1.0.0",
    lifespan=lifespan
)

logger.info(f"🔒 CORS:mode - Allowing origins: {CORS_ORIGINS}")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
    max_age=CORS_MAX_AGE,
)

dashboard_service = DashboardService()


def _validation_message(e: ValidationError) -> str:
    if e.errors():
        msg = e.errors()[0].get("msg", "")
        if "Prompt cannot be empty" in msg:
            return "Prompt cannot be empty"
        if "Prompt too long" in msg:
            return "Prompt exceeds maximum length"
    return "Invalid request format"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


async def _read_json(http_request: Request) -> Dict[str, Any]:
    try:
        body = await http_request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


async def _ndjson(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield event.to_ndjson()


def _stream(events: AsyncIterator[StreamEvent]) -> StreamingResponse:
    return StreamingResponse(
        _ndjson(events),
        media_type=NDJSON_MEDIA_TYPE,
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "service": "dashboard-agent"}


@app.post("/api/dashboard/plan")
async def create_plan(http_request: Request):
    """
    Plan a dashboard request without executing it.

    Returns the plan (camelCase) and a human-readable explanation.
    """
    try:
        request = DashboardRequest(**await _read_json(http_request))
    except ValidationError as e:
        error_msg = _validation_message(e)
        logger.warning(f"Validation failed: {error_msg}")
        return _error(400, error_msg)

    try:
        complex_query = dashboard_service.plan(request.prompt, request.config)
    except ValidationError:
        return _error(400, "Invalid executor configuration")

    return {
        "success": True,
        "plan": complex_query.to_wire(),
        "explanation": describe_plan(complex_query),
    }


@app.post("/api/dashboard/stream")
async def stream_dashboard(http_request: Request):
    """
    Plan and execute a dashboard request, streaming newline-delimited JSON
    StreamEvents. The last line is always the terminal event.
    """
    try:
        request = DashboardRequest(**await _read_json(http_request))
    except ValidationError as e:
        error_msg = _validation_message(e)
        logger.warning(f"Validation failed: {error_msg}")
        return _error(400, error_msg)

    try:
        events = dashboard_service.stream_dashboard(
            request.prompt,
            session_id=request.session_id,
            user_supplied_params=request.params,
            auth_profile_hint=request.auth_profile,
            config_overrides=request.config,
        )
    except ValidationError:
        return _error(400, "Invalid executor configuration")

    return _stream(events)


@app.post("/api/dashboard/sessions/{session_id}/resume")
async def resume_session(session_id: str, http_request: Request):
    """
    Resume the sub-queries of ``session_id`` that were waiting for user
    input, with the newly supplied parameters.
    """
    try:
        request = ResumeRequest(**await _read_json(http_request))
    except ValidationError:
        return _error(400, "Invalid request format")

    events = dashboard_service.resume(
        session_id,
        user_supplied_params=request.params,
        auth_profile_hint=request.auth_profile,
    )
    if events is None:
        return _error(404, f"No pending clarification for session '{session_id}'")

    return _stream(events)
