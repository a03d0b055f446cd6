"""End-to-end tests for the recruiter and candidate form endpoints."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from formflow.core.config import settings
from formflow.db.enums import QuotaKind
from formflow.db.models import FormInvitation
from formflow.services.quota_service import MemoryQuotaLedger


async def _invite(authed_client, application_id, form_id, **extra):
    return await authed_client.post(
        "/forms/invitations",
        json={"application_id": str(application_id), "form_id": str(form_id), **extra},
    )


def _token_from(res) -> str:
    return res.json()["form_url"].rsplit("/", 1)[-1]


@pytest.mark.asyncio
async def test_invite_view_submit_flow(
    authed_client, client, db, test_application, test_template, email_sender, tmp_path, monkeypatch
):
    monkeypatch.setattr(settings, "LOCAL_STORAGE_PATH", str(tmp_path))

    created = await _invite(authed_client, test_application.id, test_template.id, custom_message="Hi!")
    assert created.status_code == 201
    invitation = created.json()
    assert invitation["status"] == "sent"
    assert invitation["form_name"] == "Screening"
    assert invitation["form_url"].startswith(settings.FRONTEND_URL)
    token = _token_from(created)
    assert len(email_sender.sent) == 1

    opened = await client.get(f"/forms/public/{token}")
    assert opened.status_code == 200
    form = opened.json()
    assert form["status"] == "viewed"
    assert form["custom_message"] == "Hi!"
    ids = {f["label"]: f["id"] for f in form["fields"]}
    assert list(ids) == ["Full name", "Contact email", "Preferred shift", "Can you relocate?", "Resume"]

    uploaded = await client.post(
        f"/forms/public/{token}/upload",
        files={"file": ("cv.pdf", b"%PDF-1.4 resume", "application/pdf")},
    )
    assert uploaded.status_code == 201
    file_url = uploaded.json()["url"]

    submitted = await client.post(
        f"/forms/public/{token}/submit",
        json={"answers": [
            {"field_id": ids["Full name"], "answer": "Jamie Candidate"},
            {"field_id": ids["Contact email"], "answer": "jamie@example.com"},
            {"field_id": ids["Preferred shift"], "answer": "Night"},
            {"field_id": ids["Resume"], "file_url": file_url},
        ]},
    )
    assert submitted.status_code == 201
    response_id = submitted.json()["response_id"]

    again = await client.get(f"/forms/public/{token}")
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_SUBMITTED"
    assert again.json()["response_id"] == response_id

    resubmit = await client.post(f"/forms/public/{token}/submit", json={"answers": []})
    assert resubmit.status_code == 409

    listed = await authed_client.get("/forms/responses", params={"application_id": str(test_application.id)})
    assert listed.status_code == 200
    assert [r["id"] for r in listed.json()] == [response_id]
    assert listed.json()[0]["form_name"] == "Screening"

    detail = await authed_client.get(f"/forms/responses/{response_id}")
    assert detail.status_code == 200
    answers = detail.json()["answers"]
    assert [a["question"] for a in answers] == ["Full name", "Contact email", "Preferred shift", "Resume"]
    assert answers[-1]["file_url"] == file_url

    history = await authed_client.get("/forms/invitations", params={"application_id": str(test_application.id)})
    assert history.json()[0]["status"] == "answered"


@pytest.mark.asyncio
async def test_template_responses_listing(
    authed_client, client, db, test_application, test_template, template_factory, other_user
):
    created = await _invite(authed_client, test_application.id, test_template.id)
    token = _token_from(created)
    form = (await client.get(f"/forms/public/{token}")).json()
    ids = {f["label"]: f["id"] for f in form["fields"]}
    submitted = await client.post(
        f"/forms/public/{token}/submit",
        json={"answers": [
            {"field_id": ids["Full name"], "answer": "Jamie Candidate"},
            {"field_id": ids["Contact email"], "answer": "jamie@example.com"},
            {"field_id": ids["Can you relocate?"], "answer": "no"},
        ]},
    )
    assert submitted.status_code == 201

    res = await authed_client.get(f"/forms/templates/{test_template.id}/responses")
    assert res.status_code == 200
    body = res.json()
    assert body["form_id"] == str(test_template.id)
    assert body["form_name"] == "Screening"
    assert body["total"] == 1
    item = body["responses"][0]
    assert item["id"] == submitted.json()["response_id"]
    assert item["invitation_id"] == created.json()["id"]
    assert item["application_id"] == str(test_application.id)
    assert item["candidate_name"] == test_application.candidate_name
    assert item["candidate_email"] == test_application.candidate_email

    draft = template_factory(user=other_user, is_published=False)
    denied = await authed_client.get(f"/forms/templates/{draft.id}/responses")
    assert denied.status_code == 403
    missing = await authed_client.get(f"/forms/templates/{uuid.uuid4()}/responses")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_public_error_codes(client, authed_client, db, test_application, test_template):
    unknown = await client.get(f"/forms/public/{'b' * 43}")
    assert unknown.status_code == 403
    assert unknown.json()["code"] == "INVALID_TOKEN"

    created = await _invite(authed_client, test_application.id, test_template.id)
    token = _token_from(created)
    invitation = db.get(FormInvitation, uuid.UUID(created.json()["id"]))
    invitation.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    db.commit()

    expired = await client.get(f"/forms/public/{token}")
    assert expired.status_code == 410
    assert expired.json()["code"] == "FORM_EXPIRED"


@pytest.mark.asyncio
async def test_missing_required_answer_response(client, authed_client, test_application, test_template):
    created = await _invite(authed_client, test_application.id, test_template.id)
    token = _token_from(created)
    form = (await client.get(f"/forms/public/{token}")).json()
    first_id = form["fields"][0]["id"]

    res = await client.post(
        f"/forms/public/{token}/submit",
        json={"answers": [{"field_id": first_id, "answer": "Jamie"}]},
    )

    assert res.status_code == 400
    body = res.json()
    assert body["code"] == "MISSING_REQUIRED_ANSWER"
    assert body["details"][0]["message"] == '"Contact email" is required.'

    still_open = await client.get(f"/forms/public/{token}")
    assert still_open.status_code == 200


@pytest.mark.asyncio
async def test_upload_too_large_response(client, authed_client, test_application, test_template, monkeypatch):
    monkeypatch.setattr(settings, "FORM_UPLOAD_MAX_BYTES", 8)
    token = _token_from(await _invite(authed_client, test_application.id, test_template.id))

    res = await client.post(
        f"/forms/public/{token}/upload",
        files={"file": ("cv.pdf", b"0123456789", "application/pdf")},
    )

    assert res.status_code == 413
    assert res.json()["code"] == "UPLOAD_TOO_LARGE"


@pytest.mark.asyncio
async def test_duplicate_invitation_response(authed_client, test_application, test_template):
    first = await _invite(authed_client, test_application.id, test_template.id)
    second = await _invite(authed_client, test_application.id, test_template.id)

    assert second.status_code == 409
    assert second.json()["code"] == "DUPLICATE_ACTIVE_INVITATION"
    assert second.json()["existing_invitation_id"] == first.json()["id"]


@pytest.mark.asyncio
async def test_quota_exceeded_response(
    authed_client, test_template, application_factory, override_dependencies
):
    from formflow.main import app
    from formflow.services.quota_service import get_quota_ledger

    app.dependency_overrides[get_quota_ledger] = lambda: MemoryQuotaLedger(
        limits={QuotaKind.INVITATIONS_SENT.value: 0}
    )

    res = await _invite(authed_client, application_factory().id, test_template.id)

    assert res.status_code == 429
    body = res.json()
    assert body["code"] == "QUOTA_EXCEEDED"
    assert body["limit"] == 0
    assert "reset_at" in body
    assert int(res.headers["retry-after"]) >= 1


@pytest.mark.asyncio
async def test_failed_delivery_then_resend(authed_client, client, test_application, test_template, email_sender):
    email_sender.fail = True
    failed = await _invite(authed_client, test_application.id, test_template.id)
    assert failed.status_code == 201
    assert failed.json()["status"] == "failed"
    assert failed.json()["error_message"] == "Mailbox unavailable"

    dead_link = await client.get(f"/forms/public/{_token_from(failed)}")
    assert dead_link.status_code == 410
    assert dead_link.json()["code"] == "INVITATION_FAILED"

    email_sender.fail = False
    resent = await authed_client.post(f"/forms/invitations/{failed.json()['id']}/resend")
    assert resent.status_code == 201
    assert resent.json()["resent_from_id"] == failed.json()["id"]
    assert resent.json()["status"] == "sent"

    not_allowed = await authed_client.post(
        f"/forms/invitations/{resent.json()['id']}/resend", json={"custom_message": "again"}
    )
    assert not_allowed.status_code == 409
    assert not_allowed.json()["code"] == "INVALID_TRANSITION"


@pytest.mark.asyncio
async def test_remind_endpoint(authed_client, test_application, test_template, email_sender):
    created = await _invite(authed_client, test_application.id, test_template.id)

    res = await authed_client.post(f"/forms/invitations/{created.json()['id']}/remind")

    assert res.status_code == 200
    assert res.json()["reminder_sent_at"] is not None
    assert len(email_sender.sent) == 2


@pytest.mark.asyncio
async def test_bulk_endpoint(authed_client, test_template, application_factory):
    apps = [application_factory() for _ in range(2)]

    res = await authed_client.post(
        "/forms/invitations/bulk",
        json={
            "form_id": str(test_template.id),
            "application_ids": [str(a.id) for a in apps] + [str(apps[0].id)],
        },
    )

    assert res.status_code == 200
    body = res.json()
    assert (body["created"], body["skipped"], body["failed"], body["quota_exceeded"]) == (2, 0, 0, 0)
    assert len(body["items"]) == 2


@pytest.mark.asyncio
async def test_unknown_invitation_is_404(authed_client):
    res = await authed_client.post(f"/forms/invitations/{uuid.uuid4()}/remind")
    assert res.status_code == 404
    assert res.json()["code"] == "INVITATION_NOT_FOUND"


@pytest.mark.asyncio
async def test_ai_suggest_appends_to_template(authed_client, test_template, field_suggester):
    res = await authed_client.post(
        "/forms/ai-suggest",
        json={"form_id": str(test_template.id), "job_title": "Backend Engineer", "goals": ["python"]},
    )

    assert res.status_code == 200
    body = res.json()
    assert [f["label"] for f in body["fields"]] == [
        "Describe a system you designed",
        "Years of Python",
    ]
    assert body["remaining"] == settings.AI_SUGGESTION_DAILY_LIMIT - 1
    labels = [f["label"] for f in body["form"]["fields"]]
    assert labels[-2:] == ["Describe a system you designed", "Years of Python"]
    assert [f["order"] for f in body["form"]["fields"]] == list(range(len(labels)))
    assert field_suggester.calls[0].goals == ["python"]


@pytest.mark.asyncio
async def test_ai_suggest_unavailable(authed_client, field_suggester):
    field_suggester.available = False

    res = await authed_client.post("/forms/ai-suggest", json={"job_title": "Designer"})

    assert res.status_code == 503
    assert res.json()["code"] == "AI_UNAVAILABLE"


@pytest.mark.asyncio
async def test_internal_expiry_endpoint(client, authed_client, db, test_application, test_template, monkeypatch):
    created = await _invite(authed_client, test_application.id, test_template.id)
    invitation = db.get(FormInvitation, uuid.UUID(created.json()["id"]))
    invitation.expires_at = datetime.now(timezone.utc) - timedelta(days=1)
    db.commit()

    monkeypatch.setattr(settings, "INTERNAL_SECRET", "")
    unconfigured = await client.post(
        "/internal/scheduled/expire-form-invitations", headers={"X-Internal-Secret": "x"}
    )
    assert unconfigured.status_code == 501

    monkeypatch.setattr(settings, "INTERNAL_SECRET", "cron-secret")
    wrong = await client.post(
        "/internal/scheduled/expire-form-invitations", headers={"X-Internal-Secret": "nope"}
    )
    assert wrong.status_code == 403

    first = await client.post(
        "/internal/scheduled/expire-form-invitations", headers={"X-Internal-Secret": "cron-secret"}
    )
    second = await client.post(
        "/internal/scheduled/expire-form-invitations", headers={"X-Internal-Secret": "cron-secret"}
    )
    assert first.json() == {"expired": 1}
    assert second.json() == {"expired": 0}


@pytest.mark.asyncio
async def test_health(client):
    res = await client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"
