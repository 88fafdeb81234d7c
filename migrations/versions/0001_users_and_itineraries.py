"""users and itineraries

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = '0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('last_login_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'itineraries',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('owner_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('waypoints', sa.Text(), nullable=False),
        sa.Column('days', sa.Text(), nullable=False),
        sa.Column('route_summary', sa.Text(), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('is_public', sa.Boolean(), nullable=False),
        sa.Column('share_slug', sa.String(120), nullable=True),
        sa.Column('is_deleted', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_itineraries_owner_id', 'itineraries', ['owner_id'])
    op.create_index('ix_itineraries_share_slug', 'itineraries', ['share_slug'], unique=True)


def downgrade() -> None:
    op.drop_index('ix_itineraries_share_slug', table_name='itineraries')
    op.drop_index('ix_itineraries_owner_id', table_name='itineraries')
    op.drop_table('itineraries')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
