"""
Groundwork – Adaptive Intervention API

This module exposes the FastAPI app that wraps the generation pipeline
(safety gate -> model -> schema validation -> fallback) for quests,
conversation scripts and reset protocols, plus the standalone safety check.

File: api_main.py
"""

import logging
import os
import uuid
from datetime import date as Date
from functools import lru_cache
from typing import Any, List, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from ai_nodes import CoachNodes
from auth import StaticTokenVerifier, TokenVerifier, Unauthorized, resolve_identities, user_id_of
from config import get_settings
from graph_app import build_intervention_graph, run_pipeline
from rate_limit import Identity, RateLimiter, build_rate_limiter
from schemas import (
    QuestRequest,
    QuestSet,
    ResetProtocol,
    ResetRequest,
    SafetyCheckRequest,
    SafetyVerdict,
    ScriptRequest,
    ScriptSet,
    TriggerType,
    validate,
)
from store import DAILY_STATES, QUESTS, SCRIPTS_CACHE, InMemoryRecordStore, RecordStore

# --------------------------------------------------------------------
# Logging Setup
# --------------------------------------------------------------------

logger = logging.getLogger("groundwork_api")
logger.setLevel(logging.INFO)

if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

# --------------------------------------------------------------------
# Settings
# --------------------------------------------------------------------

settings = get_settings()

# --------------------------------------------------------------------
# API Models (Stable Contracts)
# --------------------------------------------------------------------


class ErrorResponse(BaseModel):
    error: str
    details: Optional[Any] = None
    request_id: Optional[str] = None


class DailyRecord(BaseModel):
    date: Date
    daily_state: Optional[dict] = None
    quests: Optional[dict] = None


# --------------------------------------------------------------------
# Dependencies (overridden in tests)
# --------------------------------------------------------------------


@lru_cache
def get_nodes() -> CoachNodes:
    return CoachNodes(settings=get_settings())


@lru_cache(maxsize=8)
def _compiled_graph(nodes: CoachNodes):
    return build_intervention_graph(nodes)


def get_graph(nodes: CoachNodes = Depends(get_nodes)):
    return _compiled_graph(nodes)


@lru_cache
def get_rate_limiter() -> RateLimiter:
    return build_rate_limiter(get_settings())


@lru_cache
def get_record_store() -> RecordStore:
    return InMemoryRecordStore()


@lru_cache
def get_token_verifier() -> TokenVerifier:
    return StaticTokenVerifier(get_settings().token_map)


# --------------------------------------------------------------------
# FastAPI App
# --------------------------------------------------------------------

app = FastAPI(
    title="Groundwork – Adaptive Intervention API",
    description=(
        "Daily quests, conversation scripts and reset protocols, generated "
        "behind a safety gate and always backed by a static fallback."
    ),
    version="1.0.0",
)

# CORS – allow all for now; tighten in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --------------------------------------------------------------------
# Middleware
# --------------------------------------------------------------------


@app.middleware("http")
async def add_request_id_and_log(request: Request, call_next):
    """Attach a request ID to each request and log basic info."""
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id

    logger.info(f"[{request_id}] {request.method} {request.url.path}")

    try:
        response = await call_next(request)
    except Exception as exc:  # global safety net
        logger.exception(f"[{request_id}] Unhandled error: {exc}")
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal server error",
                details="Unexpected error",
                request_id=request_id,
            ).model_dump(),
        )

    response.headers["X-Request-ID"] = request_id
    return response


# --------------------------------------------------------------------
# Exception Handlers
# --------------------------------------------------------------------


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    request_id = getattr(request.state, "request_id", None)
    logger.warning(f"[{request_id}] HTTPException {exc.status_code}: {exc.detail}")

    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content = {**detail, "request_id": request_id}
    else:
        content = ErrorResponse(
            error=str(detail),
            details=None,
            request_id=request_id,
        ).model_dump()

    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


def _validation_response(request: Request, errors) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    logger.warning(f"[{request_id}] ValidationError: {errors}")

    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error="Validation error",
            details=errors,
            request_id=request_id,
        ).model_dump(mode="json"),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    # malformed JSON bodies and bad path parameters
    errors = [
        {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return _validation_response(request, errors)


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    errors = [
        {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return _validation_response(request, errors)


# --------------------------------------------------------------------
# Utility Helpers
# --------------------------------------------------------------------


def _validated(shape, payload: Any):
    """Structural validation; 400 before any identity, limiter or model work."""
    outcome = validate(shape, payload)
    if not outcome.ok:
        raise HTTPException(
            status_code=400,
            detail={"error": "Validation error", "details": outcome.errors},
        )
    return outcome.value


def _identities(authorization: Optional[str], device_id: Optional[str], verifier: TokenVerifier) -> List[Identity]:
    try:
        return resolve_identities(
            authorization,
            device_id,
            verifier,
            allow_device_identity=settings.allow_device_identity,
        )
    except Unauthorized as e:
        raise HTTPException(
            status_code=401,
            detail={"error": "Unauthorized", "details": str(e)},
            headers={"WWW-Authenticate": "Bearer"},
        )


def _acquire(limiter: RateLimiter, identities: List[Identity], endpoint_class: str, response: Response) -> None:
    decision = limiter.try_acquire_all(identities, endpoint_class)
    if not decision.allowed:
        retry_after = decision.retry_after_seconds or 1
        raise HTTPException(
            status_code=429,
            detail={
                "error": "Rate limit exceeded",
                "details": f"Too many {endpoint_class} requests. Please try again later.",
                "retry_after": retry_after,
            },
            headers={"Retry-After": str(retry_after)},
        )
    if decision.remaining is not None:
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)


def _owner(identities: List[Identity]) -> str:
    """Record-store owner: the user id, or the device key for anonymous calls."""
    return user_id_of(identities) or identities[0].key()


def _persist(store: RecordStore, collection: str, owner: str, key: str, record: dict) -> None:
    # best effort: a store failure never changes the response
    try:
        store.upsert(collection, owner, key, record)
    except Exception as e:
        logger.warning(f"persist failed | collection={collection} | key={key} | error={e}")


def _log_generation(kind: str, result) -> None:
    logger.info(
        f"generation | kind={kind} | source={result.source.value} | intervention={result.intervention}"
    )


# --------------------------------------------------------------------
# Basic & Health
# --------------------------------------------------------------------


@app.get("/", tags=["meta"])
def root():
    return {
        "message": "Groundwork API is running.",
        "docs_url": "/docs",
        "environment": settings.env,
        "debug": settings.debug,
    }


@app.get("/health", tags=["meta"])
def health_check():
    return {
        "status": "ok",
        "openai_key_configured": bool(settings.openai_api_key),
        "shared_rate_limits": bool(settings.rate_limit_redis_url),
        "environment": settings.env,
        "debug": settings.debug,
    }


# --------------------------------------------------------------------
# Quests
# --------------------------------------------------------------------


@app.post(
    "/ai/quests",
    response_model=QuestSet,
    tags=["generation"],
    summary="Generate today's main + side quests from a check-in",
)
def generate_quests(
    response: Response,
    payload: Any = Body(default=None),
    authorization: Optional[str] = Header(default=None),
    x_device_id: Optional[str] = Header(default=None),
    graph=Depends(get_graph),
    limiter: RateLimiter = Depends(get_rate_limiter),
    store: RecordStore = Depends(get_record_store),
    verifier: TokenVerifier = Depends(get_token_verifier),
):
    """
    Flow:

      validate -> identity -> rate limit -> safety -> (intervene | generate)

    The check-in notes go through the safety gate. If the model is down or
    answers with something unusable, the static quest set for the reported
    energy/stress is returned instead (still 200).
    """
    req = _validated(QuestRequest, payload)
    identities = _identities(authorization, x_device_id, verifier)
    _acquire(limiter, identities, "quests", response)

    result = run_pipeline(graph, "quests", req)
    _log_generation("quests", result)

    day = (req.daily_state.date or Date.today()).isoformat()
    owner = _owner(identities)
    _persist(store, DAILY_STATES, owner, day, req.daily_state.model_dump(mode="json"))
    if not result.intervention:
        _persist(store, QUESTS, owner, day, result.model_dump(mode="json"))

    return result


# --------------------------------------------------------------------
# Conversation Scripts
# --------------------------------------------------------------------


@app.post(
    "/ai/script",
    response_model=ScriptSet,
    tags=["generation"],
    summary="Generate four response variants for a difficult conversation",
)
def generate_script(
    response: Response,
    payload: Any = Body(default=None),
    authorization: Optional[str] = Header(default=None),
    x_device_id: Optional[str] = Header(default=None),
    graph=Depends(get_graph),
    limiter: RateLimiter = Depends(get_rate_limiter),
    store: RecordStore = Depends(get_record_store),
    verifier: TokenVerifier = Depends(get_token_verifier),
):
    req = _validated(ScriptRequest, payload)
    identities = _identities(authorization, x_device_id, verifier)
    _acquire(limiter, identities, "scripts", response)

    result = run_pipeline(graph, "scripts", req)
    _log_generation("scripts", result)

    if not result.intervention:
        _persist(store, SCRIPTS_CACHE, _owner(identities), req.scenario_type.value, result.model_dump(mode="json"))

    return result


# --------------------------------------------------------------------
# Reset Protocol
# --------------------------------------------------------------------


@app.post(
    "/ai/reset",
    response_model=ResetProtocol,
    tags=["generation"],
    summary="Generate a timed grounding protocol for an emotional trigger",
)
def generate_reset(
    response: Response,
    payload: Any = Body(default=None),
    authorization: Optional[str] = Header(default=None),
    x_device_id: Optional[str] = Header(default=None),
    graph=Depends(get_graph),
    limiter: RateLimiter = Depends(get_rate_limiter),
    verifier: TokenVerifier = Depends(get_token_verifier),
):
    """
    ``use_fallback: true`` skips the model and returns the static protocol
    for the trigger (the safety gate still runs over ``context_summary``).
    """
    req = _validated(ResetRequest, payload)
    identities = _identities(authorization, x_device_id, verifier)
    _acquire(limiter, identities, "reset", response)

    result = run_pipeline(graph, "reset", req)
    _log_generation("reset", result)
    return result


@app.get(
    "/fallback/reset/{trigger}",
    response_model=ResetProtocol,
    tags=["fallback"],
    summary="Static reset protocol (no model, no identity)",
)
def fallback_reset(trigger: TriggerType, nodes: CoachNodes = Depends(get_nodes)):
    """
    Lets a client prefetch the offline protocol for a trigger so the reset
    flow still works without network.
    """
    return nodes.catalog.reset_protocol(trigger)


# --------------------------------------------------------------------
# Safety
# --------------------------------------------------------------------


@app.post(
    "/ai/safety",
    response_model=SafetyVerdict,
    tags=["safety"],
    summary="Classify free text for self-harm / crisis / substance risk",
)
def safety_check(
    response: Response,
    payload: Any = Body(default=None),
    authorization: Optional[str] = Header(default=None),
    x_device_id: Optional[str] = Header(default=None),
    nodes: CoachNodes = Depends(get_nodes),
    limiter: RateLimiter = Depends(get_rate_limiter),
    verifier: TokenVerifier = Depends(get_token_verifier),
):
    """
    Keyword pre-filter first; the classifier is only called on a match.
    """
    req = _validated(SafetyCheckRequest, payload)
    identities = _identities(authorization, x_device_id, verifier)
    _acquire(limiter, identities, "safety", response)

    return nodes.check_safety(req.text)


# --------------------------------------------------------------------
# Daily Records
# --------------------------------------------------------------------


@app.get(
    "/daily/{day}",
    response_model=DailyRecord,
    tags=["records"],
    summary="Stored check-in and quests for a date",
)
def daily_record(
    day: Date,
    response: Response,
    authorization: Optional[str] = Header(default=None),
    x_device_id: Optional[str] = Header(default=None),
    limiter: RateLimiter = Depends(get_rate_limiter),
    store: RecordStore = Depends(get_record_store),
    verifier: TokenVerifier = Depends(get_token_verifier),
):
    identities = _identities(authorization, x_device_id, verifier)
    _acquire(limiter, identities, "daily", response)

    owner = _owner(identities)
    key = day.isoformat()
    daily_state = store.select(DAILY_STATES, owner, key)
    quests = store.select(QUESTS, owner, key)

    if daily_state is None and quests is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "No record for this date", "details": key},
        )
    return DailyRecord(date=day, daily_state=daily_state, quests=quests)


# --------------------------------------------------------------------
# Local dev runner
# --------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api_main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=True,
    )
