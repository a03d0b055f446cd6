"""Structured logging helpers (PII-safe)."""

from typing import Any
from uuid import UUID


def build_log_context(
    *,
    user_id: UUID | str | None = None,
    org_id: UUID | str | None = None,
    invitation_id: UUID | str | None = None,
    form_id: UUID | str | None = None,
    application_id: UUID | str | None = None,
    request_id: str | None = None,
    route: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict (identifiers only, never answers or emails)."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = str(user_id)
    if org_id:
        context["org_id"] = str(org_id)
    if invitation_id:
        context["invitation_id"] = str(invitation_id)
    if form_id:
        context["form_id"] = str(form_id)
    if application_id:
        context["application_id"] = str(application_id)
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    return context
