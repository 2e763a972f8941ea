"""REST API for the empathy reconciler.

Endpoints:
  POST /sessions/{id}/participants                 - Register the two participants
  PUT  /sessions/{id}/empathy/draft                - Save the caller's empathy draft
  POST /sessions/{id}/empathy/consent              - Share the draft (triggers reconciliation)
  POST /sessions/{id}/self-report                  - Record the caller's Stage 1 self-report
  POST /sessions/{id}/stages/{stage}/complete      - Caller finished a stage
  POST /sessions/{id}/empathy/resubmit             - Resubmit a refined guess
  GET  /sessions/{id}/empathy/status               - Both directions for ?user_id=
  GET  /sessions/{id}/empathy/share-offer          - Pending share offer for ?user_id=
  POST /sessions/{id}/empathy/share-offer/respond  - accept / decline / refine
  GET  /sessions/{id}/empathy/summary              - Closing summary once both directions are ready
  GET  /health                                     - Health check (DB connectivity)

Authentication happens upstream; the caller identity arrives as user_id.
Trigger endpoints answer 202 and never wait for reconciliation.
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from mwf.config import Settings
from mwf.reconciler import ReconciliationCoordinator
from mwf.reconciler.errors import InvalidReconcilerInput, InvalidTransition, NotFoundError
from mwf.reconciler.schemas import OfferPending
from mwf.storage.database import Database

logger = logging.getLogger(__name__)


class BadRequest(Exception):
    """Malformed request body or missing field."""


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        raise BadRequest("Invalid JSON body")
    if not isinstance(body, dict):
        raise BadRequest("JSON body must be an object")
    return body


def _required(source: Any, name: str) -> str:
    value = source.get(name)
    if not value or not isinstance(value, str):
        raise BadRequest(f"Missing required field: {name}")
    return value


async def _bad_request(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=400)


async def _conflict(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=409)


async def _not_found(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=404)


def create_app(
    coordinator: ReconciliationCoordinator,
    database: Database,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def add_participants(request: Request) -> JSONResponse:
        """POST /sessions/{id}/participants - {"participants": [{"user_id", "display_name"}]}"""
        session_id = request.path_params["id"]
        body = await _json_body(request)
        entries = body.get("participants")
        if not isinstance(entries, list) or not entries:
            raise BadRequest("Missing required field: participants")
        pairs = [(_required(e, "user_id"), e.get("display_name")) for e in entries if isinstance(e, dict)]
        user_ids = await coordinator.add_participants(session_id, pairs)
        return JSONResponse({"session_id": session_id, "participants": user_ids}, status_code=201)

    async def save_draft(request: Request) -> JSONResponse:
        """PUT /sessions/{id}/empathy/draft"""
        session_id = request.path_params["id"]
        body = await _json_body(request)
        attempt = await coordinator.save_draft(
            session_id, _required(body, "user_id"), _required(body, "statement")
        )
        return JSONResponse({
            "attempt_id": str(attempt.id),
            "status": attempt.status,
            "revision": attempt.revision,
        })

    async def consent(request: Request) -> JSONResponse:
        """POST /sessions/{id}/empathy/consent"""
        session_id = request.path_params["id"]
        body = await _json_body(request)
        await coordinator.on_consent(session_id, _required(body, "user_id"))
        return JSONResponse({"accepted": True}, status_code=202)

    async def self_report(request: Request) -> JSONResponse:
        """POST /sessions/{id}/self-report"""
        session_id = request.path_params["id"]
        body = await _json_body(request)
        feelings = body.get("feelings")
        if feelings is not None and not isinstance(feelings, list):
            raise BadRequest("feelings must be a list")
        report = await coordinator.record_self_report(
            session_id,
            _required(body, "user_id"),
            _required(body, "content"),
            feelings=feelings,
            completed=bool(body.get("completed", False)),
        )
        return JSONResponse({
            "user_id": report.user_id,
            "completed": report.completed_at is not None,
        })

    async def complete_stage(request: Request) -> JSONResponse:
        """POST /sessions/{id}/stages/{stage}/complete"""
        session_id = request.path_params["id"]
        try:
            stage = int(request.path_params["stage"])
        except ValueError:
            raise BadRequest("stage must be an integer")
        body = await _json_body(request)
        await coordinator.on_partner_stage_completed(session_id, _required(body, "user_id"), stage)
        return JSONResponse({"accepted": True}, status_code=202)

    async def resubmit(request: Request) -> JSONResponse:
        """POST /sessions/{id}/empathy/resubmit"""
        session_id = request.path_params["id"]
        body = await _json_body(request)
        await coordinator.on_resubmit(session_id, _required(body, "user_id"), _required(body, "statement"))
        return JSONResponse({"accepted": True}, status_code=202)

    async def empathy_status(request: Request) -> JSONResponse:
        """GET /sessions/{id}/empathy/status?user_id="""
        session_id = request.path_params["id"]
        user_id = _required(request.query_params, "user_id")
        status = await coordinator.get_status(session_id, user_id)
        return JSONResponse(status.model_dump(mode="json"))

    async def share_offer(request: Request) -> JSONResponse:
        """GET /sessions/{id}/empathy/share-offer?user_id="""
        session_id = request.path_params["id"]
        user_id = _required(request.query_params, "user_id")
        found = await coordinator.get_share_offer(session_id, user_id)
        if found is None:
            return JSONResponse({"error": "No share offer pending"}, status_code=404)
        if isinstance(found, OfferPending):
            return JSONResponse(
                {"status": "preparing", **found.model_dump(mode="json")},
                status_code=202,
                headers={"Retry-After": str(max(1, round(found.retry_after)))},
            )
        return JSONResponse({"status": "ready", "offer": found.model_dump(mode="json")})

    async def respond_to_offer(request: Request) -> JSONResponse:
        """POST /sessions/{id}/empathy/share-offer/respond"""
        session_id = request.path_params["id"]
        body = await _json_body(request)
        content = body.get("content")
        if content is not None and not isinstance(content, str):
            raise BadRequest("content must be a string")
        response = await coordinator.respond_to_share_offer(
            session_id, _required(body, "user_id"), _required(body, "action"), content
        )
        return JSONResponse(response.model_dump(mode="json"))

    async def summary(request: Request) -> JSONResponse:
        """GET /sessions/{id}/empathy/summary?user_id="""
        session_id = request.path_params["id"]
        user_id = _required(request.query_params, "user_id")
        found = await coordinator.generate_summary(session_id, user_id)
        if found is None:
            return JSONResponse(
                {"error": "Summary unavailable, try again shortly"},
                status_code=503,
                headers={"Retry-After": "5"},
            )
        return JSONResponse(found.model_dump(mode="json"))

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            from sqlalchemy import text

            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            logger.warning("Health check failed: %s", e)
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/sessions/{id}/participants", add_participants, methods=["POST"]),
        Route("/sessions/{id}/empathy/draft", save_draft, methods=["PUT"]),
        Route("/sessions/{id}/empathy/consent", consent, methods=["POST"]),
        Route("/sessions/{id}/self-report", self_report, methods=["POST"]),
        Route("/sessions/{id}/stages/{stage}/complete", complete_stage, methods=["POST"]),
        Route("/sessions/{id}/empathy/resubmit", resubmit, methods=["POST"]),
        Route("/sessions/{id}/empathy/status", empathy_status),
        Route("/sessions/{id}/empathy/share-offer", share_offer),
        Route("/sessions/{id}/empathy/share-offer/respond", respond_to_offer, methods=["POST"]),
        Route("/sessions/{id}/empathy/summary", summary),
        Route("/health", health),
    ]

    exception_handlers = {
        BadRequest: _bad_request,
        InvalidReconcilerInput: _bad_request,
        InvalidTransition: _conflict,
        NotFoundError: _not_found,
    }

    kwargs: dict[str, Any] = {"routes": routes, "exception_handlers": exception_handlers}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
