"""
core/errors.py -- Stable, user-facing error messages and their HTTP kinds.

Every endpoint answers each named failure with a fixed message from this
module. Raw exception text never reaches a client: unexpected failures are
logged server-side and replaced by the endpoint's *_FAILED message.

Layer rule: core/ is the kernel. No imports from api/, auth/, moderation/,
instance/, or cache/.
"""

# Error kind -> HTTP status
ERROR_STATUS: dict[str, int] = {
    "UNAUTHORIZED": 401,
    "FORBIDDEN": 403,
    "BAD_REQUEST": 400,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "INTERNAL_SERVER_ERROR": 500,
}

VORTEX_ERROR_CODES = {
    # Authentication & authorization
    "UNAUTHORIZED": "You must be logged in to perform this action",
    "FORBIDDEN": "You don't have permission to perform this action",
    "USER_NOT_FOUND": "User not found",
    # Permission checks
    "INVALID_PERMISSION_CHECK": "Invalid permission check. You can only check one resource permission at a time.",
    # Violations
    "VIOLATION_NOT_FOUND": "Violation record not found",
    "VIOLATION_CREATE_FAILED": "Failed to create violation record",
    "VIOLATION_LIST_FAILED": "Failed to retrieve violations",
    "VIOLATION_UPDATE_FAILED": "Failed to update violation record",
    # Disputes
    "DISPUTE_NOT_FOUND": "Dispute record not found",
    "DISPUTE_CREATE_FAILED": "Failed to create dispute record",
    "DISPUTE_LIST_FAILED": "Failed to retrieve disputes",
    "DISPUTE_UPDATE_FAILED": "Failed to update dispute record",
    "DISPUTE_ALREADY_OVERTURNED": "This violation has already been overturned",
    "DISPUTE_ALREADY_EXISTS": "This violation has already been disputed",
    "DISPUTE_STATUS_REJECTED": "This dispute has already been rejected",
    "DISPUTE_STATUS_APPROVED": "This dispute has already been approved",
    # General
    "BAD_REQUEST": "Invalid request parameters",
    "PERMISSION_CHECK_FAILED": "Failed to check permission",
}

ROLE_ERROR_CODES = {
    "ROLE_ALREADY_EXISTS": "A role with this identifier already exists",
    "ROLE_INVALID_STATEMENTS": "Role statements must map each resource to a non-empty list of actions",
    "ROLE_CREATE_FAILED": "Failed to create role",
    "ROLE_REFRESH_FAILED": "Failed to refresh roles",
    "ROLE_LIST_FAILED": "Failed to retrieve roles",
}

INVITATION_ERROR_CODES = {
    "UNAUTHORIZED": "You must be logged in to create an invitation",
    "MAX_INVITATIONS_REACHED": "You have already created {limit} invitations",
    "INVITATION_FAILED": "Failed to create invitation",
    "INVITATION_LIST_FAILED": "Failed to retrieve invitations",
    "INVITE_CODE_REQUIRED": "You must provide an invite code for the alpha stage",
    "INVALID_INVITE_CODE": "Invalid or already used invitation code",
    "INVITATION_ALREADY_USED": "Invitation has been used by someone else",
    "ACCOUNT_EXISTS": "An account with this username or email already exists",
    "PROCESS_FAILED": "Failed to process invitation",
}

SETTING_ERROR_CODES = {
    "UNKNOWN_SETTING": "Unknown setting key",
    "SETTING_UPDATE_FAILED": "Failed to update setting",
    "SETTING_LIST_FAILED": "Failed to retrieve settings",
}
