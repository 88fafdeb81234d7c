"""
manage.py — CLI admin commands for the planner.

Usage:
    python manage.py init-db
    python manage.py create-user
    python manage.py create-user --email me@example.com --name "Me"
    python manage.py list-itineraries --email me@example.com
"""

import click

from auth import hash_password
from database import SessionLocal, init_db
from models import ItineraryRecord, User


@click.group()
def cli():
    """TripWeave planner administration."""


@cli.command('init-db')
def init_db_command():
    """Create any missing tables."""
    init_db()
    click.echo('✓ Database tables are in place')


@cli.command('create-user')
@click.option('--email',    prompt=True, help='Account email address')
@click.option('--name',     prompt=True, help='Full name')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True,
              help='Login password (hidden)')
def create_user(email: str, name: str, password: str):
    """Create a new planner account."""
    email = email.strip().lower()
    name  = name.strip()

    with SessionLocal() as session:
        existing = session.query(User).filter_by(email=email).first()
        if existing:
            click.echo(f'✗ An account with email {email!r} already exists (id={existing.id}).', err=True)
            raise SystemExit(1)

        user = User(
            email         = email,
            full_name     = name,
            password_hash = hash_password(password),
            is_active     = True,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        click.echo(f'✓ Created account for {email!r} (id={user.id})')


@cli.command('list-itineraries')
@click.option('--email', required=True, help='Owner email address')
def list_itineraries(email: str):
    """Print the saved itineraries of one account."""
    with SessionLocal() as session:
        user = session.query(User).filter_by(email=email.strip().lower()).first()
        if user is None:
            click.echo(f'✗ No account with email {email!r}.', err=True)
            raise SystemExit(1)
        records = (
            session.query(ItineraryRecord)
            .filter_by(owner_id=user.id, is_deleted=False)
            .order_by(ItineraryRecord.updated_at.desc())
            .all()
        )
        for record in records:
            shared = f' public:{record.share_slug}' if record.is_public else ''
            click.echo(f'#{record.id:<5} {record.title}{shared}')
        if not records:
            click.echo('(no itineraries)')


if __name__ == '__main__':
    cli()
