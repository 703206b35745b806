"""FastAPI application for the onboarding survey intake.

Usage:
    uvicorn app:create_app --factory --port 8080
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List

import httpx
from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Settings
from db import Database
from errors import RateLimited, SurveyServiceError, ValidationError, Violation
from kit_client import KitClient
from logging_setup import configure_logging
from rate_limit import RateLimiter, SlidingWindowLimiter
from response_store import ResponseStore
from submission import SubmissionService
from subscribers import SubscriberDirectory
from tag_store import TagStore
from user_tags import UserTagService

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "Survey data processed successfully"
TAGS_UPDATED_MESSAGE = "Tags updated successfully"


def build_service(
    settings: Settings,
    db: Database,
    *,
    kit_transport: httpx.BaseTransport | None = None,
    rate_limiter: RateLimiter | None = None,
) -> SubmissionService:
    """Wire the pipeline collaborators explicitly; nothing is created lazily."""
    if rate_limiter is None:
        rate_limiter = SlidingWindowLimiter(settings.rate_limit_max, settings.rate_limit_window_sec)
    return SubmissionService(
        responses=ResponseStore(db),
        tags=TagStore(db, max_workers=settings.tag_upsert_workers),
        kit=KitClient(settings, transport=kit_transport),
        subscribers=SubscriberDirectory(db),
        identity_policy=settings.identity_policy,
        rate_limiter=rate_limiter,
    )


def create_app(
    settings: Settings | None = None,
    *,
    db: Database | None = None,
    kit_transport: httpx.BaseTransport | None = None,
    rate_limiter: RateLimiter | None = None,
) -> FastAPI:
    settings = settings or Settings.load()
    configure_logging(settings.log_level)

    database = db or Database.from_settings(settings)
    database.create_all()
    service = build_service(settings, database, kit_transport=kit_transport, rate_limiter=rate_limiter)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info("Survey intake started (kit_enabled=%s)", settings.kit_enabled)
        yield
        logger.info("Shutting down database connections")
        database.dispose()

    app = FastAPI(title="Therapy Tools Survey Intake", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = database
    app.state.service = service
    user_tags = UserTagService(
        subscribers=SubscriberDirectory(database),
        tags=TagStore(database, max_workers=settings.tag_upsert_workers),
    )
    app.state.user_tags = user_tags

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=86400,
    )

    app.add_exception_handler(SurveyServiceError, _service_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)

    @app.post(
        "/survey-submission",
        summary="Submit the onboarding survey",
        description=(
            "1) Validates answers against the tag catalog (all problems reported at once).\n"
            "2) Stores the survey response; a storage failure is the only post-validation error.\n"
            "3) Upserts one tag row per (email, tag), independently.\n"
            "4) Pushes the exportable tags to Kit.com and records the sync status.\n"
            "Steps 3-4 never turn the response into an error."
        ),
    )
    def submit_survey(request: Request, payload: Any = Body(...)) -> dict[str, Any]:
        result = service.process(payload, caller=_caller_id(request, settings.trust_proxy_headers))
        return {
            "success": True,
            "message": SUCCESS_MESSAGE,
            "data": result.summary(),
            "timestamp": _now_iso(),
        }

    @app.get("/user/tags/{email}", summary="List a subscriber's tags")
    def get_user_tags(email: str) -> dict[str, Any]:
        return {"success": True, **user_tags.list_tags(email)}

    @app.post(
        "/user/tags",
        summary="Add or refresh tags for a subscriber",
        description="Body: {email, tags[], source: manual|survey|import}. Tags must be in the survey catalog.",
    )
    def update_user_tags(payload: Any = Body(...)) -> dict[str, Any]:
        result = user_tags.update_tags(payload)
        return {
            "success": True,
            "message": TAGS_UPDATED_MESSAGE,
            "tagsAdded": len(result.succeeded),
            "tagsFailed": sorted(result.failed),
            "timestamp": _now_iso(),
        }

    return app


def _caller_id(request: Request, trust_proxy_headers: bool = False) -> str:
    # X-Forwarded-For is client-controlled unless a proxy in front overwrites it
    forwarded = request.headers.get("x-forwarded-for") if trust_proxy_headers else None
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "anonymous"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error_body(error: str, details: dict[str, Any] | None = None, message: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "error": error, "timestamp": _now_iso()}
    if message:
        body["message"] = message
    if details is not None:
        body["details"] = details
    return body


def _validation_details(violations: List[Violation]) -> dict[str, Any]:
    first = violations[0] if violations else None
    return {
        "field": first.field if first else "body",
        "code": "VALIDATION_ERROR",
        "errors": [v.as_dict() for v in violations],
    }


async def _service_error_handler(request: Request, exc: SurveyServiceError) -> JSONResponse:
    headers: dict[str, str] = {}
    if isinstance(exc, ValidationError):
        body = _error_body(exc.public_message, _validation_details(exc.violations))
    elif isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
        body = _error_body(exc.public_message, message=str(exc))
    elif exc.status_code >= 500:
        logger.error("Request to %s failed: %s", request.url.path, exc)
        body = _error_body(exc.public_message)
    else:
        body = _error_body(exc.public_message, message=str(exc))
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers or None)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    violations: List[Violation] = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body") or "body"
        code = "invalid_json" if error.get("type") == "json_invalid" else str(error.get("type"))
        violations.append(Violation(field=field, code=code, message=str(error.get("msg"))))
    return JSONResponse(
        status_code=400,
        content=_error_body("Validation failed", _validation_details(violations)),
    )
