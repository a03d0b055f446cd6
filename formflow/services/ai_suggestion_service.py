"""AI field suggestions for the form builder.

Suggestions are plain field definitions. When appended to a template they go
through the same validation as fields added by hand and keep no marker of
where they came from.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from sqlalchemy.orm import Session

from formflow.core.config import settings
from formflow.core.structured_logging import build_log_context
from formflow.db.enums import FormFieldType, QuotaKind
from formflow.db.models import FormTemplate
from formflow.services import template_service
from formflow.services.exceptions import AISuggestionsUnavailableError, FormValidationError
from formflow.services.quota_service import QuotaDecision, QuotaLedger, require_quota

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 8
SCALE_OPTIONS = ["1", "2", "3", "4", "5"]
# Model vocabulary mapped onto our field types
_TYPE_ALIASES = {
    "text": FormFieldType.SHORT_TEXT.value,
    "textarea": FormFieldType.LONG_TEXT.value,
    "mcq": FormFieldType.SELECT.value,
    "multiple_choice": FormFieldType.SELECT.value,
    "scale": FormFieldType.SELECT.value,
    "boolean": FormFieldType.YES_NO.value,
}

SYSTEM_PROMPT = (
    "You are an expert HR consultant who creates effective, job-specific screening "
    "questions. Always return valid JSON only."
)


@dataclass(frozen=True)
class SuggestionContext:
    job_title: str | None = None
    job_description: str | None = None
    goals: list[str] = field(default_factory=list)


class FieldSuggester(Protocol):
    def is_available(self) -> bool: ...

    def suggest(self, context: SuggestionContext) -> list[dict[str, Any]]: ...


def _strip_code_fences(text: str) -> str:
    content = text.strip()
    if content.startswith("```"):
        lines = content.splitlines()
        if lines:
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        content = "\n".join(lines).strip()
    return content


def parse_json_object(text: str) -> dict | None:
    content = _strip_code_fences(text)
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        match = re.search(r"\{[\s\S]*\}", content)
        if not match:
            logger.warning(f"Failed to parse JSON object: {exc}")
            return None
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as inner_exc:
            logger.warning(f"Failed to parse JSON object: {inner_exc}")
            return None
    return data if isinstance(data, dict) else None


def sanitize_suggestions(raw: Any) -> list[dict[str, Any]]:
    """Keep only suggestions that would pass template validation."""
    if not isinstance(raw, list):
        return []
    cleaned: list[dict[str, Any]] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        raw_type = str(item.get("type") or item.get("fieldType") or "").strip().lower()
        field_type = _TYPE_ALIASES.get(raw_type, raw_type)
        label = str(item.get("label") or "").strip()[: template_service.LABEL_MAX_LENGTH]
        if not label or field_type not in {t.value for t in FormFieldType}:
            continue

        options = None
        if field_type == FormFieldType.SELECT.value:
            if raw_type == "scale":
                options = list(SCALE_OPTIONS)
            else:
                options = [str(o).strip() for o in item.get("options") or [] if str(o).strip()]
            if not options:
                continue

        cleaned.append({
            "type": field_type,
            "label": label,
            "required": bool(item.get("required", False)),
            "options": options,
        })
        if len(cleaned) >= MAX_SUGGESTIONS:
            break
    return cleaned


def _build_prompt(context: SuggestionContext) -> str:
    goals = ", ".join(context.goals) if context.goals else "general screening"
    parts = ["Create 5-8 screening questions for candidates applying to this role."]
    if context.job_title:
        parts.append(f"Job title: {context.job_title}")
    if context.job_description:
        parts.append(f"Job description:\n{context.job_description}")
    parts.append(f"Assessment goals: {goals}")
    parts.append(
        'Return a JSON object {"fields": [...]} where each field has "label" (string), '
        '"type" (one of short_text, long_text, email, yes_no, select, date), '
        '"required" (boolean) and, for select only, "options" (array of strings).'
    )
    return "\n\n".join(parts)


class OpenAIFieldSuggester:
    """OpenAI-compatible chat completions API with JSON output."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.AI_API_KEY
        self.base_url = (base_url or settings.AI_API_BASE_URL).rstrip("/")
        self.model = model or settings.AI_MODEL
        self.timeout = timeout or settings.AI_TIMEOUT_SECONDS
        self._transport = transport

    def is_available(self) -> bool:
        return bool(self.api_key)

    def suggest(self, context: SuggestionContext) -> list[dict[str, Any]]:
        if not self.is_available():
            raise AISuggestionsUnavailableError()
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    f"{self.base_url}/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": self.model,
                        "messages": [
                            {"role": "system", "content": SYSTEM_PROMPT},
                            {"role": "user", "content": _build_prompt(context)},
                        ],
                        "response_format": {"type": "json_object"},
                        "temperature": 0.5,
                        "max_tokens": 1500,
                    },
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"AI suggestion request failed: {type(e).__name__}")
            raise AISuggestionsUnavailableError(
                "AI suggestions are temporarily unavailable. Please add fields manually."
            ) from e

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise AISuggestionsUnavailableError("AI returned an unexpected response.") from e

        parsed = parse_json_object(content) or {}
        return sanitize_suggestions(parsed.get("fields"))


class DisabledFieldSuggester:
    def is_available(self) -> bool:
        return False

    def suggest(self, context: SuggestionContext) -> list[dict[str, Any]]:
        raise AISuggestionsUnavailableError()


def get_field_suggester() -> FieldSuggester:
    """FastAPI dependency returning the configured suggester."""
    if settings.ai_enabled:
        return OpenAIFieldSuggester()
    return DisabledFieldSuggester()


@dataclass
class SuggestionResult:
    fields: list[dict[str, Any]]
    quota: QuotaDecision
    template: FormTemplate | None = None


def suggest_fields(
    db: Session,
    suggester: FieldSuggester,
    ledger: QuotaLedger,
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    context: SuggestionContext,
    form_id: uuid.UUID | None = None,
    include_all: bool = False,
) -> SuggestionResult:
    """
    Ask the suggester for fields, gated by the daily AI quota.

    With ``form_id`` the suggestions are appended to that template. A quota
    unit is spent per call once the suggester is reachable, whatever it returns.
    """
    if not (context.job_title or context.job_description):
        raise FormValidationError(
            "Provide a job title or description.",
            details=[{"field": "job_description", "message": "Job title or description is required."}],
        )
    if not suggester.is_available():
        raise AISuggestionsUnavailableError()

    template = None
    if form_id is not None:
        template = template_service.get_template(db, org_id, form_id)
        template_service.ensure_can_edit(template, user_id, include_all)

    decision = require_quota(ledger, user_id, QuotaKind.AI_SUGGESTIONS)
    fields = suggester.suggest(context)

    if template is not None and fields:
        template = template_service.append_suggested_fields(db, template, user_id, fields)

    logger.info(
        "form_ai_suggestions_generated",
        extra={
            **build_log_context(user_id=user_id, org_id=org_id, form_id=form_id),
            "fields_generated": len(fields),
        },
    )
    return SuggestionResult(fields=fields, quota=decision, template=template)
