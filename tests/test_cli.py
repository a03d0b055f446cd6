"""Tests for the formflow CLI."""

from datetime import datetime, timedelta, timezone

from click.testing import CliRunner

from formflow.cli import cli
from formflow.db.enums import FormInvitationStatus, Role
from formflow.db.models import FormInvitation, Organization, Recruiter
from formflow.services import invitation_service


def test_create_org_bootstraps_admin(db):
    runner = CliRunner()

    result = runner.invoke(
        cli,
        ["create-org", "--name", "Acme", "--slug", "Acme", "--admin-email", "Admin@Acme.com"],
    )

    assert result.exit_code == 0, result.output
    org = db.query(Organization).filter(Organization.slug == "acme").one()
    admin = db.query(Recruiter).filter(Recruiter.organization_id == org.id).one()
    assert admin.email == "admin@acme.com"
    assert admin.role == Role.ADMIN.value


def test_create_org_rejects_duplicate_slug(db, test_org):
    result = CliRunner().invoke(
        cli,
        ["create-org", "--name", "Again", "--slug", test_org.slug, "--admin-email", "x@y.com"],
    )
    assert result.exit_code == 1
    assert "already exists" in result.output


def test_expire_invitations_command(
    db, test_org, test_user, test_application, test_template, email_sender, quota_ledger
):
    invitation = invitation_service.issue_invitation(
        db, email_sender, quota_ledger, test_org.id, test_user.id,
        test_application.id, test_template.id,
    )
    invitation.expires_at = datetime.now(timezone.utc) - timedelta(hours=1)
    db.commit()

    result = CliRunner().invoke(cli, ["expire-invitations"])

    assert result.exit_code == 0, result.output
    assert "Expired 1 invitation(s)" in result.output
    db.expire_all()
    assert db.get(FormInvitation, invitation.id).status == FormInvitationStatus.EXPIRED.value
