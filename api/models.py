"""
API request and response models for the Cosmos REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py and
moderation/models.py, which own the internal domain representation. Route
handlers map between the two through the from_* factory methods below.

JSON field names are camelCase on the wire (userId, applicableRules, ...);
Python attribute names stay snake_case. populate_by_name=True lets handlers
and tests construct models with either spelling.
"""

from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import Invitation
from moderation.models import SEVERITY_MAX, SEVERITY_MIN, Dispute, Violation

ROLE_ID_PATTERN = r"^[a-z0-9][a-z0-9_-]{0,99}$"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class RegisterRequest(BaseModel):
    """Sign-up body. invite stays optional here so a missing code gets the
    invitation error message instead of a generic validation error."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    password: str = Field(min_length=8, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    invite: Optional[str] = Field(default=None, max_length=32)


class RegisterResponse(CamelModel):
    user_id: str
    username: str
    role: str
    invitation_id: str


class LoginResponse(CamelModel):
    access_token: str
    token_type: str
    expires_in: int
    username: str
    role: str


class MeResponse(CamelModel):
    user_id: str
    username: str
    role: str
    roles: list[str]


class EffectivePermissionsResponse(CamelModel):
    """Informational only; the authoritative gate is each endpoint's own check."""

    user_id: str
    permissions: dict[str, list[str]]


# ---------------------------------------------------------------------------
# Permission checks
# ---------------------------------------------------------------------------


class HasPermissionRequest(CamelModel):
    """Body of POST /vortex/has-permission.

    permission must name exactly one domain; the route rejects anything else
    with INVALID_PERMISSION_CHECK before any role lookup.
    """

    permission: dict[str, list[str]]
    user_id: Optional[str] = None
    role: Optional[str] = None


class HasPermissionResponse(CamelModel):
    error: Optional[str] = None
    success: bool


# ---------------------------------------------------------------------------
# Violations
# ---------------------------------------------------------------------------


class ViolationCreate(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    user_id: str = Field(min_length=1)
    content: Any
    severity: int = Field(ge=SEVERITY_MIN, le=SEVERITY_MAX)
    applicable_rules: list[str] = Field(default_factory=list, max_length=50)
    public_comment: Optional[str] = Field(default=None, max_length=2000)
    internal_note: Optional[str] = Field(default=None, max_length=2000)
    expires_at: Optional[datetime] = None


class ViolationUpdate(CamelModel):
    """Body of POST /vortex/update-violation. Only fields sent are changed."""

    id: str = Field(min_length=1)
    content: Any = None
    public_comment: Optional[str] = Field(default=None, max_length=2000)
    internal_note: Optional[str] = Field(default=None, max_length=2000)
    severity: Optional[int] = Field(default=None, ge=SEVERITY_MIN, le=SEVERITY_MAX)
    overturned: Optional[bool] = None
    expires_at: Optional[datetime] = None


class ViolationResponse(CamelModel):
    """Full violation record, as seen by moderators."""

    id: str
    user_id: Optional[str]
    moderator_id: Optional[str]
    content: Any
    severity: int
    applicable_rules: list[str]
    public_comment: Optional[str]
    internal_note: Optional[str]
    overturned: bool
    expires_at: Optional[str]
    created_at: str
    updated_at: str
    last_updated_by: Optional[str]
    moderation_status: str
    moderation_metadata: Optional[dict] = None

    @classmethod
    def from_violation(cls, v: Violation) -> "ViolationResponse":
        return cls(
            id=v.id,
            user_id=v.user_id,
            moderator_id=v.moderator_id,
            content=v.content,
            severity=v.severity,
            applicable_rules=v.applicable_rules,
            public_comment=v.public_comment,
            internal_note=v.internal_note,
            overturned=v.overturned,
            expires_at=v.expires_at,
            created_at=v.created_at,
            updated_at=v.updated_at,
            last_updated_by=v.last_updated_by,
            moderation_status=v.moderation_status,
            moderation_metadata=v.moderation_metadata,
        )


class OwnViolationResponse(CamelModel):
    """A violation as shown to its target user: moderator-only fields removed."""

    id: str
    user_id: Optional[str]
    content: Any
    severity: int
    applicable_rules: list[str]
    public_comment: Optional[str]
    overturned: bool
    expires_at: Optional[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_violation(cls, v: Violation) -> "OwnViolationResponse":
        return cls(
            id=v.id,
            user_id=v.user_id,
            content=v.content,
            severity=v.severity,
            applicable_rules=v.applicable_rules,
            public_comment=v.public_comment,
            overturned=v.overturned,
            expires_at=v.expires_at,
            created_at=v.created_at,
            updated_at=v.updated_at,
        )


class ViolationSummary(CamelModel):
    id: str
    severity: int
    applicable_rules: list[str]
    public_comment: Optional[str]
    overturned: bool
    created_at: str
    expires_at: Optional[str]

    @classmethod
    def from_violation(cls, v: Violation) -> "ViolationSummary":
        return cls(
            id=v.id,
            severity=v.severity,
            applicable_rules=v.applicable_rules,
            public_comment=v.public_comment,
            overturned=v.overturned,
            created_at=v.created_at,
            expires_at=v.expires_at,
        )


class ViolationListResponse(CamelModel):
    violations: list[ViolationResponse]
    total: int
    limit: int
    offset: int


class OwnViolationListResponse(CamelModel):
    violations: list[OwnViolationResponse]
    total: int
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


class DisputeCreate(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    violation_id: str = Field(min_length=1)
    reason: str = Field(min_length=10, max_length=5000)


class DisputeResolve(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    dispute_id: str = Field(min_length=1)
    status: Literal["approved", "rejected"]
    justification: Optional[str] = Field(default=None, min_length=5, max_length=5000)


class DisputeResponse(CamelModel):
    id: str
    violation_id: str
    user_id: str
    reason: str
    status: str
    justification: Optional[str]
    reviewed_by: Optional[str]
    reviewed_at: Optional[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_dispute(cls, d: Dispute) -> "DisputeResponse":
        return cls(
            id=d.id,
            violation_id=d.violation_id,
            user_id=d.user_id,
            reason=d.reason,
            status=d.status,
            justification=d.justification,
            reviewed_by=d.reviewed_by,
            reviewed_at=d.reviewed_at,
            created_at=d.created_at,
            updated_at=d.updated_at,
        )


class OwnDisputeResponse(DisputeResponse):
    violation: Optional[ViolationSummary] = None


class DisputeListResponse(CamelModel):
    disputes: list[DisputeResponse]
    total: int
    limit: int
    offset: int


class OwnDisputeListResponse(CamelModel):
    disputes: list[OwnDisputeResponse]
    total: int
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class RoleCreate(CamelModel):
    id: str = Field(pattern=ROLE_ID_PATTERN)
    statements: dict[str, list[str]]


class RoleResponse(CamelModel):
    id: str
    statements: dict[str, list[str]]
    static: bool


class RoleRefreshRequest(CamelModel):
    clear_dynamic: bool = False
    bust_cache: bool = False
    reload_cache: bool = True
    reload_db: bool = True
    reinitialize: bool = False


class RoleRefreshResult(CamelModel):
    removed: int
    cache_loaded: int
    db_loaded: int
    total: int


class RoleRefreshResponse(CamelModel):
    success: bool
    message: str
    result: Optional[RoleRefreshResult] = None
    sanitized_options: Optional[RoleRefreshRequest] = None


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


class InvitationResponse(CamelModel):
    id: str
    code: str
    creator_id: str
    user_id: Optional[str]
    created_at: str
    used_at: Optional[str]

    @classmethod
    def from_invitation(cls, i: Invitation) -> "InvitationResponse":
        return cls(
            id=i.id,
            code=i.code,
            creator_id=i.creator_id,
            user_id=i.user_id,
            created_at=i.created_at,
            used_at=i.used_at,
        )


class InvitationCreateResponse(CamelModel):
    invitation: InvitationResponse


class InvitationListResponse(CamelModel):
    invitations: list[InvitationResponse]


# ---------------------------------------------------------------------------
# Instance settings
# ---------------------------------------------------------------------------

SettingValue = Union[bool, int, float, str, list[str], list[int], list[float]]


class SettingUpdate(CamelModel):
    key: str = Field(min_length=1, max_length=100)
    value: SettingValue


class SettingResponse(CamelModel):
    key: str
    value: Any = None


class SettingsResponse(CamelModel):
    """Every known key; keys with no stored value and no default map to null."""

    settings: dict[str, Any]


class SettingsCacheClearResponse(CamelModel):
    cleared: int
