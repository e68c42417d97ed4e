"""
moderation/models.py -- Domain dataclasses for violations and disputes.

Pattern: Data class (pure data container). JSON-bearing columns (content,
applicable_rules, moderation_metadata) hold decoded Python values here; the
store serializes them on write and parses them on read, so no caller ever
sees the stored JSON strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

DISPUTE_PENDING = "pending"
DISPUTE_APPROVED = "approved"
DISPUTE_REJECTED = "rejected"
DISPUTE_STATUSES = (DISPUTE_PENDING, DISPUTE_APPROVED, DISPUTE_REJECTED)

# External workflow status a violation must carry to be updated or disputed.
MODERATION_APPROVED = "approved"

SEVERITY_MIN = 1
SEVERITY_MAX = 10


@dataclass
class Violation:
    """A moderator's finding against a user.

    internal_note, moderator_id and last_updated_by are moderator-only and are
    stripped from the target user's own view. Never hard-deleted: expires_at
    and overturned mark the end of its life.
    """

    user_id: str
    moderator_id: str
    content: Any
    severity: int
    applicable_rules: list[str] = field(default_factory=list)
    id: str | None = None
    public_comment: str | None = None
    internal_note: str | None = None
    overturned: bool = False
    expires_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_updated_by: str | None = None
    moderation_status: str = MODERATION_APPROVED
    moderation_metadata: dict | None = None


@dataclass
class Dispute:
    """A target user's appeal of one violation.

    status moves pending -> approved or pending -> rejected, exactly once.
    justification, reviewed_by and reviewed_at are set by that transition.
    """

    violation_id: str
    user_id: str
    reason: str
    id: str | None = None
    status: str = DISPUTE_PENDING
    justification: str | None = None
    reviewed_by: str | None = None
    reviewed_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
