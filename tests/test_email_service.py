"""Tests for invitation email delivery."""

import json

import httpx

from formflow.services.email_service import (
    ConsoleEmailSender,
    ResendEmailSender,
    get_email_sender,
)


def _sender(handler) -> ResendEmailSender:
    return ResendEmailSender(
        api_key="re_test",
        from_email="Hiring <hiring@example.com>",
        transport=httpx.MockTransport(handler),
    )


def test_resend_success_returns_message_id():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "email_123"})

    result = _sender(handler).send(
        "cand@example.com", "Please complete: Screening", "Hi\n\nOpen <link>", idempotency_key="form-invite-1"
    )

    assert result.success is True
    assert result.message_id == "email_123"
    assert captured["headers"]["idempotency-key"] == "form-invite-1"
    assert captured["body"]["to"] == ["cand@example.com"]
    assert captured["body"]["html"] == "<p>Hi</p><p>Open &lt;link&gt;</p>"


def test_resend_idempotency_conflict_counts_as_sent():
    result = _sender(lambda request: httpx.Response(409, json={"message": "duplicate"})).send(
        "cand@example.com", "s", "b", idempotency_key="k"
    )
    assert result.success is True


def test_resend_error_is_reported_not_raised():
    result = _sender(lambda request: httpx.Response(422, json={"message": "Invalid `to` field"})).send(
        "bad", "s", "b"
    )
    assert result.success is False
    assert result.error == "Resend API error: 422 (Invalid `to` field)"


def test_resend_network_error_is_reported():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    result = _sender(handler).send("cand@example.com", "s", "b")
    assert result.success is False
    assert "ConnectError" in result.error


def test_resend_without_api_key_fails_fast():
    result = ResendEmailSender(api_key="").send("cand@example.com", "s", "b")
    assert result.success is False


def test_get_email_sender_uses_backend_setting(monkeypatch):
    from formflow.core.config import settings

    monkeypatch.setattr(settings, "EMAIL_BACKEND", "resend")
    assert isinstance(get_email_sender(), ResendEmailSender)
    monkeypatch.setattr(settings, "EMAIL_BACKEND", "console")
    assert isinstance(get_email_sender(), ConsoleEmailSender)
