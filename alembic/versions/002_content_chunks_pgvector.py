"""content_chunks pgvector column and index

Revision ID: 002_content_chunks_pgvector
Revises: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "002_content_chunks_pgvector"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name != "postgresql":
        return

    has_vector = bind.execute(
        sa.text("SELECT 1 FROM pg_available_extensions WHERE name = 'vector' LIMIT 1")
    ).scalar()
    if not has_vector:
        # pgvector is not installed on this postgres host; JSON vectors keep working.
        return

    op.execute("CREATE EXTENSION IF NOT EXISTS vector")
    # 1536 = text-embedding-3-small
    op.execute("ALTER TABLE content_chunks ADD COLUMN IF NOT EXISTS embedding_pg vector(1536)")
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_content_chunks_embedding_pg_ivfflat
        ON content_chunks
        USING ivfflat (embedding_pg vector_cosine_ops)
        """
    )


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name != "postgresql":
        return
    op.execute("DROP INDEX IF EXISTS ix_content_chunks_embedding_pg_ivfflat")
    op.execute("ALTER TABLE content_chunks DROP COLUMN IF EXISTS embedding_pg")
