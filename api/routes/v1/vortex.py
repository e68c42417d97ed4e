"""
api/routes/v1/vortex.py -- Moderation ("vortex") REST endpoints.

Routes:
  POST /vortex/has-permission     -- single-resource permission check
  POST /vortex/create-violation   -- violation:create
  GET  /vortex/list-violations    -- violation:list
  GET  /vortex/my-violations      -- authenticated; own approved violations
  POST /vortex/update-violation   -- violation:update
  POST /vortex/dispute-violation  -- authenticated; target user only
  GET  /vortex/list-disputes      -- violation:manage
  POST /vortex/resolve-dispute    -- violation:manage
  GET  /vortex/my-disputes        -- authenticated; own disputes

Every handler body runs inside error_boundary(): the named failures below are
raised as HTTPExceptions with fixed messages from core.errors, and any other
exception becomes a 500 with the endpoint's *_FAILED message.

Moderator-only fields (internalNote, moderatorId, lastUpdatedBy) never appear
in the my-* responses.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.exc import IntegrityError

from api.errors import api_error, error_boundary
from api.models import (
    DisputeCreate,
    DisputeListResponse,
    DisputeResolve,
    DisputeResponse,
    HasPermissionRequest,
    HasPermissionResponse,
    OwnDisputeListResponse,
    OwnDisputeResponse,
    OwnViolationListResponse,
    OwnViolationResponse,
    ViolationCreate,
    ViolationListResponse,
    ViolationResponse,
    ViolationSummary,
    ViolationUpdate,
)
from auth.access import is_single_resource_request
from auth.dependencies import get_current_user, require_permission, try_get_current_user
from auth.models import User
from auth.permissions import PermissionChecker
from auth.store import UserStore
from core.config import get_settings
from core.errors import VORTEX_ERROR_CODES
from moderation.models import DISPUTE_APPROVED, DISPUTE_PENDING, MODERATION_APPROVED, Dispute, Violation
from moderation.store import ModerationStore

router = APIRouter()

SortBy = Literal["createdAt", "updatedAt", "severity", "expiresAt"]
SortDirection = Literal["asc", "desc"]
DisputeStatus = Literal["pending", "approved", "rejected"]


def _iso(value: Optional[datetime]) -> Optional[str]:
    """Normalize a client datetime to a UTC ISO string. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# POST /vortex/has-permission
# ---------------------------------------------------------------------------


@router.post("/vortex/has-permission", response_model=HasPermissionResponse)
async def has_permission(request: Request, body: HasPermissionRequest) -> HasPermissionResponse:
    """Check one resource's actions for an explicit role, an explicit user, or the session user.

    Precedence: role, then userId, then the session. Requests naming more
    than one resource (or no actions) are rejected before any lookup.
    """
    if not is_single_resource_request(body.permission):
        raise api_error("BAD_REQUEST", VORTEX_ERROR_CODES["INVALID_PERMISSION_CHECK"])

    checker: PermissionChecker = request.app.state.checker
    user_store: UserStore = request.app.state.user_store

    with error_boundary(VORTEX_ERROR_CODES["PERMISSION_CHECK_FAILED"], endpoint="has-permission"):
        if body.role:
            success = await checker.has_permission(body.role, body.permission)
        elif body.user_id:
            if user_store.get_by_id(body.user_id) is None:
                raise api_error("BAD_REQUEST", VORTEX_ERROR_CODES["USER_NOT_FOUND"])
            success = await checker.check_permissions(body.permission, user_id=body.user_id)
        else:
            session_user = try_get_current_user(request)
            if session_user is None:
                raise api_error("UNAUTHORIZED", VORTEX_ERROR_CODES["UNAUTHORIZED"])
            success = await checker.check_permissions(body.permission, session_user=session_user)
        return HasPermissionResponse(error=None, success=success)


# ---------------------------------------------------------------------------
# Violations
# ---------------------------------------------------------------------------


@router.post("/vortex/create-violation", response_model=ViolationResponse, status_code=201)
async def create_violation(
    request: Request,
    body: ViolationCreate,
    current_user: User = Depends(require_permission("violation", "create")),
) -> ViolationResponse:
    """Record a violation against an existing user. The caller becomes its moderator."""
    store: ModerationStore = request.app.state.moderation
    user_store: UserStore = request.app.state.user_store

    with error_boundary(VORTEX_ERROR_CODES["VIOLATION_CREATE_FAILED"], endpoint="create-violation"):
        if user_store.get_by_id(body.user_id) is None:
            raise api_error("BAD_REQUEST", VORTEX_ERROR_CODES["USER_NOT_FOUND"])
        created = store.create_violation(
            Violation(
                user_id=body.user_id,
                moderator_id=current_user.id,
                content=body.content,
                severity=body.severity,
                applicable_rules=body.applicable_rules,
                public_comment=body.public_comment,
                internal_note=body.internal_note,
                expires_at=_iso(body.expires_at),
            ),
            default_expiry_days=get_settings().violation_default_expiry_days,
        )
        return ViolationResponse.from_violation(created)


@router.get("/vortex/list-violations", response_model=ViolationListResponse)
async def list_violations(
    request: Request,
    user_id: Optional[str] = Query(None, alias="userId"),
    moderator_id: Optional[str] = Query(None, alias="moderatorId"),
    overturned: Optional[bool] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    sort_by: SortBy = Query("createdAt", alias="sortBy"),
    sort_direction: SortDirection = Query("desc", alias="sortDirection"),
    current_user: User = Depends(require_permission("violation", "list")),
) -> ViolationListResponse:
    """Paginated, filterable list of all violations."""
    store: ModerationStore = request.app.state.moderation

    with error_boundary(VORTEX_ERROR_CODES["VIOLATION_LIST_FAILED"], endpoint="list-violations"):
        violations, total = store.list_violations(
            user_id=user_id,
            moderator_id=moderator_id,
            overturned=overturned,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
            sort_direction=sort_direction,
        )
        return ViolationListResponse(
            violations=[ViolationResponse.from_violation(v) for v in violations],
            total=total,
            limit=limit,
            offset=offset,
        )


@router.get("/vortex/my-violations", response_model=OwnViolationListResponse)
async def my_violations(
    request: Request,
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    sort_by: SortBy = Query("createdAt", alias="sortBy"),
    sort_direction: SortDirection = Query("desc", alias="sortDirection"),
    current_user: User = Depends(get_current_user),
) -> OwnViolationListResponse:
    """The caller's own approved violations, without moderator-only fields."""
    store: ModerationStore = request.app.state.moderation

    with error_boundary(VORTEX_ERROR_CODES["VIOLATION_LIST_FAILED"], endpoint="my-violations"):
        violations, total = store.list_violations(
            user_id=current_user.id,
            moderation_status=MODERATION_APPROVED,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
            sort_direction=sort_direction,
        )
        return OwnViolationListResponse(
            violations=[OwnViolationResponse.from_violation(v) for v in violations],
            total=total,
            limit=limit,
            offset=offset,
        )


@router.post("/vortex/update-violation", response_model=ViolationResponse)
async def update_violation(
    request: Request,
    body: ViolationUpdate,
    current_user: User = Depends(require_permission("violation", "update")),
) -> ViolationResponse:
    """Partially update an approved violation. Only fields present in the body change."""
    store: ModerationStore = request.app.state.moderation

    fields = body.model_dump(exclude_unset=True, exclude={"id"})
    # severity and overturned are NOT NULL columns; an explicit null leaves them unchanged
    for name in ("severity", "overturned"):
        if fields.get(name, 0) is None:
            del fields[name]
    if "expires_at" in fields:
        fields["expires_at"] = _iso(body.expires_at)

    with error_boundary(VORTEX_ERROR_CODES["VIOLATION_UPDATE_FAILED"], endpoint="update-violation"):
        updated = store.update_violation(body.id, updated_by=current_user.id, **fields)
        if updated is None:
            raise api_error("NOT_FOUND", VORTEX_ERROR_CODES["VIOLATION_NOT_FOUND"])
        return ViolationResponse.from_violation(updated)


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


@router.post("/vortex/dispute-violation", response_model=DisputeResponse, status_code=201)
async def dispute_violation(
    request: Request,
    body: DisputeCreate,
    current_user: User = Depends(get_current_user),
) -> DisputeResponse:
    """Open the single allowed dispute on one of the caller's own violations.

    A violation the caller does not own answers exactly like a missing one.
    """
    store: ModerationStore = request.app.state.moderation

    with error_boundary(VORTEX_ERROR_CODES["DISPUTE_CREATE_FAILED"], endpoint="dispute-violation"):
        violation = store.get_violation(body.violation_id)
        if (
            violation is None
            or violation.user_id != current_user.id
            or violation.moderation_status != MODERATION_APPROVED
        ):
            raise api_error("NOT_FOUND", VORTEX_ERROR_CODES["VIOLATION_NOT_FOUND"])
        if violation.overturned:
            raise api_error("BAD_REQUEST", VORTEX_ERROR_CODES["DISPUTE_ALREADY_OVERTURNED"])
        if store.get_dispute_for_violation(violation.id) is not None:
            raise api_error("CONFLICT", VORTEX_ERROR_CODES["DISPUTE_ALREADY_EXISTS"])
        try:
            created = store.create_dispute(
                Dispute(violation_id=violation.id, user_id=current_user.id, reason=body.reason)
            )
        except IntegrityError as exc:
            # A concurrent request won the unique violation_id slot.
            raise api_error("CONFLICT", VORTEX_ERROR_CODES["DISPUTE_ALREADY_EXISTS"]) from exc
        return DisputeResponse.from_dispute(created)


@router.get("/vortex/list-disputes", response_model=DisputeListResponse)
async def list_disputes(
    request: Request,
    status: Optional[DisputeStatus] = Query(None),
    user_id: Optional[str] = Query(None, alias="userId"),
    violation_id: Optional[str] = Query(None, alias="violationId"),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(require_permission("violation", "manage")),
) -> DisputeListResponse:
    store: ModerationStore = request.app.state.moderation

    with error_boundary(VORTEX_ERROR_CODES["DISPUTE_LIST_FAILED"], endpoint="list-disputes"):
        disputes, total = store.list_disputes(
            status=status,
            user_id=user_id,
            violation_id=violation_id,
            limit=limit,
            offset=offset,
        )
        return DisputeListResponse(
            disputes=[DisputeResponse.from_dispute(d) for d in disputes],
            total=total,
            limit=limit,
            offset=offset,
        )


def _already_resolved(dispute: Dispute):
    key = "DISPUTE_STATUS_APPROVED" if dispute.status == DISPUTE_APPROVED else "DISPUTE_STATUS_REJECTED"
    return api_error("CONFLICT", VORTEX_ERROR_CODES[key])


@router.post("/vortex/resolve-dispute", response_model=DisputeResponse)
async def resolve_dispute(
    request: Request,
    body: DisputeResolve,
    current_user: User = Depends(require_permission("violation", "manage")),
) -> DisputeResponse:
    """Approve or reject a pending dispute. Approval overturns the violation.

    The store only transitions rows still pending, so a lost race re-reads
    the dispute and reports the status the winner set.
    """
    store: ModerationStore = request.app.state.moderation

    with error_boundary(VORTEX_ERROR_CODES["DISPUTE_UPDATE_FAILED"], endpoint="resolve-dispute"):
        dispute = store.get_dispute(body.dispute_id)
        if dispute is None:
            raise api_error("NOT_FOUND", VORTEX_ERROR_CODES["DISPUTE_NOT_FOUND"])
        if dispute.status != DISPUTE_PENDING:
            raise _already_resolved(dispute)

        resolved = store.resolve_dispute(
            dispute.id,
            status=body.status,
            reviewer_id=current_user.id,
            justification=body.justification,
            atomic=get_settings().atomic_dispute_resolution,
        )
        if resolved is None:
            current = store.get_dispute(dispute.id)
            if current is None:
                raise api_error("NOT_FOUND", VORTEX_ERROR_CODES["DISPUTE_NOT_FOUND"])
            raise _already_resolved(current)
        return DisputeResponse.from_dispute(resolved)


@router.get("/vortex/my-disputes", response_model=OwnDisputeListResponse)
async def my_disputes(
    request: Request,
    status: Optional[DisputeStatus] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
) -> OwnDisputeListResponse:
    """The caller's own disputes, each with a summary of the disputed violation."""
    store: ModerationStore = request.app.state.moderation

    with error_boundary(VORTEX_ERROR_CODES["DISPUTE_LIST_FAILED"], endpoint="my-disputes"):
        disputes, total = store.list_disputes(status=status, user_id=current_user.id, limit=limit, offset=offset)
        violations = store.get_violations([d.violation_id for d in disputes])
        rows = []
        for d in disputes:
            row = OwnDisputeResponse(**DisputeResponse.from_dispute(d).model_dump())
            v = violations.get(d.violation_id)
            if v is not None:
                row.violation = ViolationSummary.from_violation(v)
            rows.append(row)
        return OwnDisputeListResponse(disputes=rows, total=total, limit=limit, offset=offset)
