"""Operator HTTP API for the listing dispatch module."""
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import List, Union

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from adrouter.config import Config
from adrouter.container import ServiceContainer
from adrouter.core.errors import (
    DispatchError,
    InvalidStateError,
    NotFoundError,
    PrivilegeDeniedError,
    ValidationError,
)
from adrouter.core.transitions import DispatchStatus
from adrouter.services.audit_service import AuditAction, EntityType, entry_to_dict
from adrouter.services.distribution_service import QueueFilters
from adrouter.services.permission_service import operator_to_dict
from adrouter.services.target_service import suggestion_to_dict, target_to_dict
from adrouter.utils.datetime_utils import day_bounds_utc
from database.db import db

# Don't configure logging here - it's configured in adrouter/main.py
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    NotFoundError: 404,
    InvalidStateError: 409,
    PrivilegeDeniedError: 403,
    ValidationError: 400,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    logger.info("Starting dispatch API...")
    config = Config.from_env()
    await db.connect()
    await db.require_schema()
    app.state.container = await ServiceContainer.create(config)
    logger.info("Dispatch API ready")
    try:
        yield
    finally:
        logger.info("Shutting down dispatch API...")
        container = getattr(app.state, "container", None)
        if container is not None:
            await container.cleanup()
        app.state.container = None
        await db.disconnect()


app = FastAPI(title="Listing Dispatch API", lifespan=lifespan)
router = APIRouter(prefix="/api/dispatch")


@app.exception_handler(DispatchError)
async def _dispatch_error_handler(request: Request, exc: DispatchError):
    status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 400)
    body = {"detail": exc.message, "error": exc.kind}
    required = getattr(exc, "required", None)
    if required:
        body["required"] = required
    if status_code >= 403:
        logger.info(f"{request.method} {request.url.path} -> {status_code} {exc.kind}: {exc.message}")
    return JSONResponse(status_code=status_code, content=body)


# ----------------------------------------------------------------------
# Request guard
# ----------------------------------------------------------------------

def _get_admin_token_from_request(request: Request) -> str | None:
    # Prefer Authorization: Bearer <token>, fallback to X-Admin-Token header
    auth = request.headers.get("authorization")
    if auth:
        parts = auth.strip().split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]
    token = request.headers.get("x-admin-token")
    return token.strip() if token else None


def _require_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="dispatch service not ready")
    return container


async def _guard(
    request: Request,
    capability: str,
    bucket: str | None = None,
) -> tuple[ServiceContainer, str]:
    """
    Authenticate, authorize and rate-limit one operator request.

    Returns:
        (container, actor_id)
    """
    container = _require_container(request)
    if not container.config.dispatch_enabled:
        raise HTTPException(status_code=503, detail="dispatch module is disabled")

    provided = _get_admin_token_from_request(request)
    if not provided or provided != container.config.admin_api_token:
        raise HTTPException(status_code=401, detail="invalid or missing admin token")

    actor_id = (request.headers.get("x-actor-id") or "").strip()
    if not actor_id:
        raise HTTPException(status_code=400, detail="X-Actor-Id header is required")

    logger.info(f"dispatch_request actor={actor_id} {request.method} {request.url.path}")
    await container.permission_service.require(actor_id, capability)

    if bucket:
        allowed, retry_after = await container.rate_limiter.hit(actor_id, bucket)
        if not allowed:
            raise HTTPException(
                status_code=429,
                detail="too many requests, slow down",
                headers={"Retry-After": str(retry_after)},
            )
    return container, actor_id


# ----------------------------------------------------------------------
# Request models
# ----------------------------------------------------------------------

ScopeList = List[Union[str, int]]


class _DeferPayload(BaseModel):
    reason: str | None = None


class _FailPayload(BaseModel):
    error: str = ""


class _OverridePayload(BaseModel):
    reason: str = ""


class _AssignPayload(BaseModel):
    target_id: int


class _DigestPayload(BaseModel):
    item_ids: List[int]


class _TargetPayload(BaseModel):
    name: str
    internal_code: str | None = None
    channel: str | None = "group"
    city_scopes: ScopeList = []
    region_scopes: ScopeList = []
    category_scopes: ScopeList = []
    daily_quota: int | None = None
    allow_digest: bool | None = True
    invite_link: str | None = None


class _TargetUpdatePayload(BaseModel):
    name: str | None = None
    channel: str | None = None
    city_scopes: ScopeList | None = None
    region_scopes: ScopeList | None = None
    category_scopes: ScopeList | None = None
    daily_quota: int | None = None
    allow_digest: bool | None = None
    invite_link: str | None = None


class _TargetStatusPayload(BaseModel):
    status: str


class _ReviewPayload(BaseModel):
    notes: str | None = None


class _OperatorPayload(BaseModel):
    actor_id: str
    role: str


class _PurgePayload(BaseModel):
    days: int | None = None


def _parse_statuses(raw: str | None) -> list[str]:
    if not raw:
        return []
    statuses = []
    for part in raw.split(","):
        part = part.strip().upper()
        if not part:
            continue
        try:
            statuses.append(DispatchStatus(part).value)
        except ValueError:
            raise ValidationError(f"unknown status '{part}'") from None
    return statuses


# ----------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------

@app.get("/health")
async def health():
    return {"status": "ok", "database": await db.health_check()}


# ----------------------------------------------------------------------
# Listings
# ----------------------------------------------------------------------

@router.post("/listings/{listing_id}/dispatch")
async def create_dispatch(listing_id: str, request: Request):
    container, actor_id = await _guard(request, "operate", "create")
    result = await container.distribution_service.create_for_listing(listing_id, actor_id)
    return result.to_dict()


@router.post("/listings/{listing_id}/approve-and-dispatch")
async def approve_and_dispatch(listing_id: str, request: Request):
    container, actor_id = await _guard(request, "operate", "create")
    result = await container.distribution_service.approve_and_dispatch(listing_id, actor_id)
    return result.to_dict()


@router.get("/listings/{listing_id}/message-text")
async def listing_message_text(listing_id: str, request: Request):
    container, _ = await _guard(request, "operate")
    return await container.distribution_service.render_listing(listing_id)


@router.get("/listings/{listing_id}/history")
async def listing_history(listing_id: str, request: Request, limit: int = 50):
    container, _ = await _guard(request, "view_audit")
    entries = await container.audit_service.get_listing_history(listing_id, limit=max(1, min(limit, 500)))
    return {"listing_id": listing_id, "entries": [entry_to_dict(e) for e in entries]}


# ----------------------------------------------------------------------
# Queue
# ----------------------------------------------------------------------

@router.get("/queue")
async def get_queue(
    request: Request,
    target_id: int | None = None,
    channel: str | None = None,
    status: str | None = None,
    city_id: str | None = None,
    category_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    unassigned: bool = False,
    limit: int = 50,
    offset: int = 0,
):
    container, _ = await _guard(request, "operate")
    filters = QueueFilters(
        target_id=target_id,
        channel=channel,
        statuses=_parse_statuses(status),
        city_id=city_id,
        category_id=category_id,
        date_from=date_from,
        date_to=date_to,
        unassigned=unassigned,
        limit=limit,
        offset=offset,
    )
    return await container.distribution_service.get_queue(filters)


@router.get("/queue/{item_id}")
async def get_queue_item(item_id: int, request: Request):
    container, _ = await _guard(request, "operate")
    return await container.distribution_service.get_item(item_id)


@router.get("/queue/{item_id}/clipboard-text")
async def get_clipboard_text(item_id: int, request: Request):
    container, _ = await _guard(request, "operate")
    text = await container.distribution_service.get_clipboard_text(item_id)
    return {"item_id": item_id, "text": text}


@router.post("/queue/{item_id}/start")
async def start_item(item_id: int, request: Request):
    container, actor_id = await _guard(request, "operate", "queue_action")
    return await container.distribution_service.start(item_id, actor_id)


@router.post("/queue/{item_id}/cancel")
async def cancel_item(item_id: int, request: Request):
    container, actor_id = await _guard(request, "operate", "queue_action")
    return await container.distribution_service.cancel(item_id, actor_id)


@router.post("/queue/{item_id}/confirm-sent")
async def confirm_item_sent(item_id: int, request: Request):
    container, actor_id = await _guard(request, "operate", "queue_action")
    return await container.distribution_service.confirm_sent(item_id, actor_id)


@router.post("/queue/{item_id}/defer")
async def defer_item(item_id: int, payload: _DeferPayload, request: Request):
    container, actor_id = await _guard(request, "operate", "queue_action")
    return await container.distribution_service.defer(item_id, actor_id, payload.reason)


@router.post("/queue/{item_id}/fail")
async def fail_item(item_id: int, payload: _FailPayload, request: Request):
    container, actor_id = await _guard(request, "operate", "queue_action")
    return await container.distribution_service.fail(item_id, actor_id, payload.error)


@router.post("/queue/{item_id}/assign")
async def assign_item(item_id: int, payload: _AssignPayload, request: Request):
    container, actor_id = await _guard(request, "operate", "queue_action")
    return await container.distribution_service.assign(item_id, payload.target_id, actor_id)


@router.post("/queue/{item_id}/override-resend")
async def override_resend(item_id: int, payload: _OverridePayload, request: Request):
    container, actor_id = await _guard(request, "override", "queue_action")
    return await container.distribution_service.override_resend(item_id, actor_id, payload.reason)


# ----------------------------------------------------------------------
# Digests
# ----------------------------------------------------------------------

@router.post("/targets/{target_id}/digests")
async def create_digest(target_id: int, payload: _DigestPayload, request: Request):
    container, actor_id = await _guard(request, "operate", "digest")
    return await container.distribution_service.create_digest(target_id, payload.item_ids, actor_id)


@router.post("/digests/{digest_id}/confirm-sent")
async def confirm_digest_sent(digest_id: int, request: Request):
    container, actor_id = await _guard(request, "operate", "digest")
    return await container.distribution_service.confirm_digest_sent(digest_id, actor_id)


# ----------------------------------------------------------------------
# Targets
# ----------------------------------------------------------------------

@router.get("/targets")
async def list_targets(request: Request, status: str | None = None, search: str | None = None):
    container, _ = await _guard(request, "operate")
    targets = await container.target_service.list_targets(status=status, search=search)
    return {"targets": targets, "total": len(targets)}


@router.post("/targets", status_code=201)
async def create_target(payload: _TargetPayload, request: Request):
    container, actor_id = await _guard(request, "manage_targets")
    target = await container.target_service.create_target(actor_id, **payload.model_dump())
    return target_to_dict(target)


@router.get("/targets/stats/today")
async def today_target_stats(request: Request):
    container, _ = await _guard(request, "operate")
    return {"targets": await container.routing_engine.today_target_stats()}


@router.get("/targets/{target_id}")
async def get_target(target_id: int, request: Request):
    container, _ = await _guard(request, "operate")
    target = await container.target_service.get_target(target_id)
    quota = await container.routing_engine.check_daily_quota(target_id)
    data = target_to_dict(target)
    data["quota_today"] = quota.to_dict()
    return data


@router.patch("/targets/{target_id}")
async def update_target(target_id: int, payload: _TargetUpdatePayload, request: Request):
    container, actor_id = await _guard(request, "manage_targets")
    changes = payload.model_dump(exclude_unset=True)
    target = await container.target_service.update_target(target_id, actor_id, changes)
    return target_to_dict(target)


@router.patch("/targets/{target_id}/status")
async def change_target_status(target_id: int, payload: _TargetStatusPayload, request: Request):
    container, actor_id = await _guard(request, "manage_targets")
    target = await container.target_service.change_status(target_id, payload.status, actor_id)
    return target_to_dict(target)


# ----------------------------------------------------------------------
# Suggestions
# ----------------------------------------------------------------------

@router.post("/suggestions", status_code=201)
async def suggest_target(payload: _TargetPayload, request: Request):
    container, actor_id = await _guard(request, "operate", "suggestion")
    suggestion = await container.target_service.suggest(actor_id, **payload.model_dump())
    return suggestion_to_dict(suggestion)


@router.get("/suggestions")
async def list_suggestions(request: Request, status: str | None = None):
    container, _ = await _guard(request, "review_suggestions")
    suggestions = await container.target_service.list_suggestions(status)
    return {"suggestions": [suggestion_to_dict(s) for s in suggestions]}


@router.post("/suggestions/{suggestion_id}/approve")
async def approve_suggestion(suggestion_id: int, payload: _ReviewPayload, request: Request):
    container, actor_id = await _guard(request, "review_suggestions")
    return await container.target_service.approve_suggestion(suggestion_id, actor_id, payload.notes)


@router.post("/suggestions/{suggestion_id}/reject")
async def reject_suggestion(suggestion_id: int, payload: _ReviewPayload, request: Request):
    container, actor_id = await _guard(request, "review_suggestions")
    suggestion = await container.target_service.reject_suggestion(suggestion_id, actor_id, payload.notes)
    return suggestion_to_dict(suggestion)


# ----------------------------------------------------------------------
# Reports
# ----------------------------------------------------------------------

@router.get("/reports/daily")
async def daily_report(request: Request, day: date | None = Query(None, alias="date")):
    container, _ = await _guard(request, "operate")
    return await container.report_service.daily_report(day)


@router.get("/dashboard")
async def dashboard(request: Request):
    container, _ = await _guard(request, "operate")
    return await container.report_service.dashboard()


# ----------------------------------------------------------------------
# Audit
# ----------------------------------------------------------------------

@router.get("/audit/actors/{actor_id}")
async def actor_history(actor_id: str, request: Request, limit: int = 100):
    container, _ = await _guard(request, "view_audit")
    entries = await container.audit_service.get_actor_actions(actor_id, limit=max(1, min(limit, 500)))
    return {"actor_id": actor_id, "entries": [entry_to_dict(e) for e in entries]}


@router.get("/audit/targets/{target_id}")
async def target_history(target_id: int, request: Request, limit: int = 50):
    container, _ = await _guard(request, "view_audit")
    entries = await container.audit_service.get_target_history(target_id, limit=max(1, min(limit, 500)))
    return {"target_id": target_id, "entries": [entry_to_dict(e) for e in entries]}


@router.get("/audit/stats")
async def audit_stats(request: Request, date_from: date | None = None, date_to: date | None = None):
    container, _ = await _guard(request, "view_audit")
    tz_name = container.config.timezone_name
    start = day_bounds_utc(date_from, tz_name)[0] if date_from else None
    end = day_bounds_utc(date_to, tz_name)[1] if date_to else None
    return {
        "from": date_from.isoformat() if date_from else None,
        "to": date_to.isoformat() if date_to else None,
        "actions": await container.audit_service.get_action_stats(start, end),
    }


@router.get("/audit/overrides")
async def override_events(request: Request, limit: int = 50):
    container, _ = await _guard(request, "view_audit")
    entries = await container.audit_service.get_override_events(limit=max(1, min(limit, 500)))
    return {"entries": [entry_to_dict(e) for e in entries]}


@router.post("/audit/purge")
async def purge_audit(payload: _PurgePayload, request: Request):
    container, actor_id = await _guard(request, "manage_operators")
    days = payload.days or container.config.audit_retention_days
    deleted = await container.audit_service.purge_older_than(days)
    await container.audit_service.log(
        AuditAction.PURGE_AUDIT, actor_id, EntityType.OPERATOR, actor_id, {"days": days, "deleted": deleted}
    )
    return {"deleted": deleted, "days": days}


# ----------------------------------------------------------------------
# Operators
# ----------------------------------------------------------------------

@router.get("/operators")
async def list_operators(request: Request):
    container, _ = await _guard(request, "manage_operators")
    operators = await container.permission_service.list_operators()
    return {"operators": [operator_to_dict(o) for o in operators]}


@router.get("/operators/me")
async def my_capabilities(request: Request):
    container, actor_id = await _guard(request, "operate")
    return {
        "actor_id": actor_id,
        "capabilities": await container.permission_service.capabilities_for(actor_id),
    }


@router.post("/operators", status_code=201)
async def grant_operator(payload: _OperatorPayload, request: Request):
    container, actor_id = await _guard(request, "manage_operators")
    operator = await container.permission_service.grant_role(payload.actor_id, payload.role, actor_id)
    return operator_to_dict(operator)


@router.delete("/operators/{operator_id}")
async def revoke_operator(operator_id: str, request: Request):
    container, actor_id = await _guard(request, "manage_operators")
    if not await container.permission_service.revoke(operator_id, actor_id):
        raise NotFoundError("operator", operator_id)
    return {"revoked": operator_id}


app.include_router(router)
