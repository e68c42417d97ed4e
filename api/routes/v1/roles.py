"""
api/routes/v1/roles.py -- Role registry administration endpoints.

Routes:
  GET  /roles           -- list registered roles      (moderation:view)
  POST /roles           -- define a new dynamic role  (ac:create)
  POST /roles/refresh   -- coordinated reload         (moderation:view)
  POST /roles/rebuild   -- destructive full resync    (moderation:view)

refresh and rebuild never raise on a failed reload: they answer
{success: false, message: "Failed to refresh roles"} and log the cause.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from api.errors import api_error, error_boundary
from api.models import RoleCreate, RoleRefreshRequest, RoleRefreshResponse, RoleRefreshResult, RoleResponse
from auth.dependencies import require_permission
from auth.models import User
from auth.refresh import RefreshOptions, RefreshResult, RoleRefresher
from auth.registry import InvalidStatementsError, RoleExistsError, RoleRegistry
from core.errors import ROLE_ERROR_CODES

logger = logging.getLogger("cosmos.roles")

router = APIRouter()


def _role_response(registry: RoleRegistry, role_id: str) -> RoleResponse:
    return RoleResponse(
        id=role_id,
        statements=registry.statements_for(role_id) or {},
        static=registry.is_static(role_id),
    )


def _refresh_response(result: RefreshResult, options: RoleRefreshRequest | None) -> RoleRefreshResponse:
    return RoleRefreshResponse(
        success=True,
        message=f"Roles refreshed ({result.total} registered)",
        result=RoleRefreshResult(**result.to_dict()),
        sanitized_options=options,
    )


@router.get("/roles", response_model=list[RoleResponse])
async def list_roles(
    request: Request,
    current_user: User = Depends(require_permission("moderation", "view")),
) -> list[RoleResponse]:
    registry: RoleRegistry = request.app.state.registry
    with error_boundary(ROLE_ERROR_CODES["ROLE_LIST_FAILED"], endpoint="list-roles"):
        await registry.ensure_initialized()
        return [_role_response(registry, role_id) for role_id in registry.role_ids()]


@router.post("/roles", response_model=RoleResponse, status_code=201)
async def create_role(
    request: Request,
    body: RoleCreate,
    current_user: User = Depends(require_permission("ac", "create")),
) -> RoleResponse:
    """Define a dynamic role, persist it, and publish it to the cache."""
    registry: RoleRegistry = request.app.state.registry
    refresher: RoleRefresher = request.app.state.refresher

    with error_boundary(ROLE_ERROR_CODES["ROLE_CREATE_FAILED"], endpoint="create-role", role=body.id):
        await registry.ensure_initialized()
        try:
            await registry.define_role(body.id, body.statements)
        except InvalidStatementsError as exc:
            raise api_error("BAD_REQUEST", ROLE_ERROR_CODES["ROLE_INVALID_STATEMENTS"]) from exc
        except RoleExistsError as exc:
            raise api_error("CONFLICT", ROLE_ERROR_CODES["ROLE_ALREADY_EXISTS"]) from exc
        await refresher.bump_version()
        logger.info("Role %r created by %s", body.id, current_user.username)
        return _role_response(registry, body.id)


@router.post("/roles/refresh", response_model=RoleRefreshResponse)
async def refresh_roles(
    request: Request,
    body: RoleRefreshRequest | None = None,
    current_user: User = Depends(require_permission("moderation", "view")),
) -> RoleRefreshResponse:
    """Reload roles under the refresh lock. The echoed options are the validated ones."""
    refresher: RoleRefresher = request.app.state.refresher
    options = body or RoleRefreshRequest()
    try:
        await refresher.registry.ensure_initialized()
        result = await refresher.refresh_roles(RefreshOptions(**options.model_dump()))
    except Exception:
        logger.exception("Role refresh requested by %s failed", current_user.username)
        return RoleRefreshResponse(
            success=False,
            message=ROLE_ERROR_CODES["ROLE_REFRESH_FAILED"],
            sanitized_options=options,
        )
    return _refresh_response(result, options)


@router.post("/roles/rebuild", response_model=RoleRefreshResponse)
async def rebuild_roles(
    request: Request,
    current_user: User = Depends(require_permission("moderation", "view")),
) -> RoleRefreshResponse:
    """Drop dynamic roles and the role cache, then reload everything from the DB."""
    refresher: RoleRefresher = request.app.state.refresher
    try:
        result = await refresher.force_full_rebuild()
    except Exception:
        logger.exception("Role rebuild requested by %s failed", current_user.username)
        return RoleRefreshResponse(success=False, message=ROLE_ERROR_CODES["ROLE_REFRESH_FAILED"])
    return _refresh_response(result, None)
