"""Domain errors raised by the form services.

Every error is an expected, recoverable condition. Each carries the HTTP status
and machine-readable code the API layer renders, plus a message that tells the
candidate or recruiter what to do next.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID


class FormServiceError(Exception):
    """Base exception for form service errors."""

    status_code = 400
    code = "FORM_ERROR"
    message = "The request could not be completed."

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        self.message = message or self.message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        payload.update(self.extra)
        return payload


# =============================================================================
# Validation
# =============================================================================

class FormValidationError(FormServiceError):
    """Malformed template, field or answer. Carries field-level details."""

    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Invalid form data."

    def __init__(
        self,
        message: str | None = None,
        details: list[dict[str, str]] | None = None,
    ) -> None:
        self.details = details or []
        super().__init__(message, details=self.details)


class FieldLimitExceededError(FormValidationError):
    code = "FIELD_LIMIT_EXCEEDED"
    message = "Field limit exceeded."


class MissingRequiredAnswerError(FormValidationError):
    code = "MISSING_REQUIRED_ANSWER"
    message = "Please answer every required question."


class UploadTooLargeError(FormServiceError):
    status_code = 413
    code = "UPLOAD_TOO_LARGE"
    message = "The file is too large."


# =============================================================================
# Lookups / access
# =============================================================================

class TemplateNotFoundError(FormServiceError):
    status_code = 404
    code = "TEMPLATE_NOT_FOUND"
    message = "Form template not found."


class ApplicationNotFoundError(FormServiceError):
    status_code = 404
    code = "APPLICATION_NOT_FOUND"
    message = "Application not found."


class InvitationNotFoundError(FormServiceError):
    status_code = 404
    code = "INVITATION_NOT_FOUND"
    message = "Invitation not found."


class ResponseNotFoundError(FormServiceError):
    status_code = 404
    code = "RESPONSE_NOT_FOUND"
    message = "Response not found."


class TemplateAccessDeniedError(FormServiceError):
    status_code = 403
    code = "TEMPLATE_ACCESS_DENIED"
    message = "You can only use your own templates or published templates."


class TemplateInUseError(FormServiceError):
    status_code = 409
    code = "TEMPLATE_IN_USE"
    message = (
        "This template has invitations awaiting a response. "
        "Unpublish it instead, or wait until they are answered or expire."
    )


# =============================================================================
# Invitation lifecycle
# =============================================================================

class DuplicateActiveInvitationError(FormServiceError):
    status_code = 409
    code = "DUPLICATE_ACTIVE_INVITATION"
    message = "An invitation for this form has already been sent to this candidate."

    def __init__(self, existing_invitation_id: UUID | None = None) -> None:
        self.existing_invitation_id = existing_invitation_id
        super().__init__(
            existing_invitation_id=str(existing_invitation_id)
            if existing_invitation_id
            else None,
        )


class InvalidTransitionError(FormServiceError):
    status_code = 409
    code = "INVALID_TRANSITION"
    message = "The invitation is no longer in a state that allows this action."

    def __init__(self, current: str, target: str, message: str | None = None) -> None:
        self.current = current
        self.target = target
        super().__init__(message, current_status=current, target_status=target)


class QuotaExceededError(FormServiceError):
    status_code = 429
    code = "QUOTA_EXCEEDED"
    message = "Daily limit reached. Please try again tomorrow."

    def __init__(
        self,
        kind: str,
        limit: int,
        remaining: int,
        reset_at: datetime,
        message: str | None = None,
    ) -> None:
        self.kind = kind
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at
        self.retry_after_seconds = max(
            0, int((reset_at - datetime.now(timezone.utc)).total_seconds())
        )
        super().__init__(
            message,
            kind=kind,
            limit=limit,
            remaining=remaining,
            reset_at=reset_at.isoformat(),
            retry_after_seconds=self.retry_after_seconds,
        )


class RateLimitExceededError(FormServiceError):
    status_code = 429
    code = "RATE_LIMITED"
    message = "Too many attempts. Please try again in a few minutes."

    def __init__(self, limit: int, retry_after_seconds: int) -> None:
        self.limit = limit
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            limit=limit,
            remaining=0,
            retry_after_seconds=retry_after_seconds,
        )


# =============================================================================
# Public token resolution
# =============================================================================

class TokenNotFoundError(FormServiceError):
    status_code = 403
    code = "INVALID_TOKEN"
    message = "Invalid invitation link. Please check the URL or contact the recruiter."


class TokenExpiredError(FormServiceError):
    status_code = 410
    code = "FORM_EXPIRED"
    message = "This form invitation has expired. Please ask the recruiter to send a new link."


class InvitationFailedError(FormServiceError):
    status_code = 410
    code = "INVITATION_FAILED"
    message = "This invitation could not be delivered and is no longer valid. Please ask the recruiter to resend it."


class AlreadyAnsweredError(FormServiceError):
    status_code = 409
    code = "ALREADY_SUBMITTED"
    message = "You've already submitted this form. No further action is needed."

    def __init__(self, response_id: UUID | None = None) -> None:
        self.response_id = response_id
        super().__init__(response_id=str(response_id) if response_id else None)


# =============================================================================
# Collaborators
# =============================================================================

class StorageUnavailableError(FormServiceError):
    status_code = 503
    code = "UPLOAD_FAILED"
    message = "The file could not be stored. Please try again in a moment."


class AISuggestionsUnavailableError(FormServiceError):
    status_code = 503
    code = "AI_UNAVAILABLE"
    message = "AI suggestions are not available right now."
