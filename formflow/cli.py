"""CLI tools for FormFlow administration."""

import click

from formflow.db.enums import Role
from formflow.db.models import Organization, Recruiter
from formflow.db.session import SessionLocal
from formflow.services import invitation_service


@click.group()
def cli():
    """FormFlow CLI tools."""
    pass


@cli.command()
@click.option("--name", required=True, help="Organization name")
@click.option("--slug", required=True, help="URL-friendly slug (lowercase, no spaces)")
@click.option("--admin-email", required=True, help="Admin email address")
@click.option("--admin-name", default="Admin", show_default=True, help="Admin display name")
def create_org(name: str, slug: str, admin_email: str, admin_name: str):
    """
    Create organization and its first admin recruiter.

    This is the bootstrap command for setting up a new tenant.

    Example:
        formflow create-org --name "Acme Corp" --slug "acme" --admin-email "admin@acme.com"
    """
    db = SessionLocal()
    try:
        # Validate slug format
        slug = slug.lower().strip()
        if not slug.replace("-", "").replace("_", "").isalnum():
            click.echo("❌ Slug must be alphanumeric (with optional hyphens/underscores)")
            raise SystemExit(1)

        existing = db.query(Organization).filter(Organization.slug == slug).first()
        if existing:
            click.echo(f"❌ Organization with slug '{slug}' already exists")
            raise SystemExit(1)

        email = admin_email.lower().strip()
        if db.query(Recruiter).filter(Recruiter.email == email).first():
            click.echo(f"❌ A recruiter with email {email} already exists")
            raise SystemExit(1)

        org = Organization(name=name, slug=slug)
        db.add(org)
        db.flush()

        admin = Recruiter(
            organization_id=org.id,
            email=email,
            display_name=admin_name,
            role=Role.ADMIN.value,
        )
        db.add(admin)
        db.commit()

        click.echo(f"✓ Created organization: {name}")
        click.echo(f"  ID: {org.id}")
        click.echo(f"  Slug: {slug}")
        click.echo(f"✓ Created admin {email} (ID: {admin.id})")
    except SystemExit:
        db.rollback()
        raise
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise SystemExit(1)
    finally:
        db.close()


@cli.command()
def expire_invitations():
    """
    Mark invitations past their expiry as expired.

    Safe to run on a schedule or by hand; repeated runs are no-ops.
    """
    with SessionLocal() as db:
        expired = invitation_service.expire_stale_invitations(db)
    click.echo(f"✓ Expired {expired} invitation(s)")


if __name__ == "__main__":
    cli()
