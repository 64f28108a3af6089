"""portals.chat_settings

Revision ID: 003_portal_chat_settings
Revises: 002_content_chunks_pgvector
Create Date: 2026-10-20
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "003_portal_chat_settings"
down_revision = "002_content_chunks_pgvector"
branch_labels = None
depends_on = None

JSONB = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def upgrade() -> None:
    op.add_column("portals", sa.Column("chat_settings", JSONB, nullable=True))


def downgrade() -> None:
    op.drop_column("portals", "chat_settings")
