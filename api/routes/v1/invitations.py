"""
api/routes/v1/invitations.py -- Invitation codes.

Routes:
  POST /invitation/create  -- invitation:create; at most MAX_INVITATIONS_PER_USER per creator
  GET  /invitation/list    -- authenticated; the caller's own invitations

The "user" static role grants invitation:create, so every ordinary account can
invite up to the cap. Codes are 13 lowercase alphanumerics.
"""

from __future__ import annotations

import secrets
import string

from fastapi import APIRouter, Depends, Request

from api.errors import api_error, error_boundary
from api.limiter import limiter
from api.models import InvitationCreateResponse, InvitationListResponse, InvitationResponse
from auth.dependencies import get_current_user, require_permission
from auth.models import Invitation, User
from auth.store import UserStore
from core.config import get_settings
from core.errors import INVITATION_ERROR_CODES

router = APIRouter()

_CODE_ALPHABET = string.ascii_lowercase + string.digits
_CODE_LENGTH = 13


def generate_invitation_code() -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(_CODE_LENGTH))


@limiter.limit("20/minute")
@router.post("/invitation/create", response_model=InvitationCreateResponse, status_code=201)
async def create_invitation(
    request: Request,
    current_user: User = Depends(require_permission("invitation", "create")),
) -> InvitationCreateResponse:
    user_store: UserStore = request.app.state.user_store
    limit = get_settings().max_invitations_per_user

    with error_boundary(INVITATION_ERROR_CODES["INVITATION_FAILED"], endpoint="invitation-create"):
        if user_store.count_invitations(current_user.id) >= limit:
            raise api_error("FORBIDDEN", INVITATION_ERROR_CODES["MAX_INVITATIONS_REACHED"].format(limit=limit))
        invitation = user_store.create_invitation(
            Invitation(code=generate_invitation_code(), creator_id=current_user.id)
        )
        return InvitationCreateResponse(invitation=InvitationResponse.from_invitation(invitation))


@router.get("/invitation/list", response_model=InvitationListResponse)
async def list_invitations(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> InvitationListResponse:
    user_store: UserStore = request.app.state.user_store
    with error_boundary(INVITATION_ERROR_CODES["INVITATION_LIST_FAILED"], endpoint="invitation-list"):
        invitations = user_store.list_invitations(current_user.id)
        return InvitationListResponse(invitations=[InvitationResponse.from_invitation(i) for i in invitations])
