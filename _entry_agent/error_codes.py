"""
Error Codes — Postbox

PURPOSE:
    Every failure the pipeline can hand back to a caller is a plain dict:

        {"code": "MISSING_CONFIG_FIELDS", "kind": "ConfigInvalid", "data": [...]}

    `code` is the stable, machine-readable identifier (the same strings the
    site owners already see in their redirect URLs), `kind` groups codes into
    the small error taxonomy callers branch on, and `data` carries diagnostics
    such as the offending field names.

    Collaborators that do I/O (GitHub, Akismet, Mailgun) raise EntryError so
    the failure can unwind through an await chain. The orchestrator catches it
    at the boundary and never lets a raw exception reach the caller.
"""

from typing import Optional


ERROR_KINDS = {
    # Config loading
    "NO_CONFIG_PATH": "ConfigMissing",
    "MISSING_CONFIG_BLOCK": "ConfigMissing",
    "MISSING_CONFIG_FIELDS": "ConfigInvalid",
    "CONFIG_PARSE_ERROR": "ConfigInvalid",
    "MISSING_ORIGIN": "OriginRejected",
    "INVALID_ORIGIN": "OriginRejected",
    "BRANCH_MISMATCH": "BranchMismatch",
    # Spam
    "IS_SPAM": "SpamRejected",
    "SPAM_CHECK_FAILED": "SpamRejected",
    # Fields
    "MISSING_REQUIRED_FIELDS": "FieldValidationFailed",
    "INVALID_FIELDS": "FieldValidationFailed",
    # Serialization
    "SERIALIZATION_FAILED": "SerializationFailed",
    "NO_FRONTMATTER_CONTENT_TRANSFORM": "SerializationFailed",
    "INVALID_FORMAT": "UnsupportedFormat",
    # Version control
    "GITHUB_READING_FILE": "GatewayReadFailed",
    "GITHUB_WRITING_FILE": "GatewayWriteFailed",
    "GITHUB_FILE_ALREADY_EXISTS": "GatewayWriteFailed",
    "GITHUB_CREATING_PR": "GatewayReviewFailed",
    "GITHUB_GET_REVIEW": "GatewayReviewFailed",
    # Notifications
    "NOTIFICATION_FAILED": "NotificationFailed",
    "INVALID_REVIEW_PAYLOAD": "NotificationFailed",
}


def make_error(code: str, data=None, message: Optional[str] = None) -> dict:
    """Build the structured error dict for `code`."""
    error = {
        "code": code,
        "kind": ERROR_KINDS.get(code, "Unknown"),
        "data": data,
    }
    if message:
        error["message"] = message
    return error


class EntryError(Exception):
    """
    Raised by collaborators and async stages to abort the pipeline.

    Holds one or more error dicts built with make_error(). The first code is
    also exposed as `.code` for callers that only care about one.
    """

    def __init__(self, code_or_errors, data=None, message: Optional[str] = None):
        if isinstance(code_or_errors, list):
            self.errors = code_or_errors
        else:
            self.errors = [make_error(code_or_errors, data, message)]
        self.code = self.errors[0]["code"] if self.errors else None
        super().__init__(message or self.code)
