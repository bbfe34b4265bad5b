"""Create the records table backing every record store collection.

Revision ID: 001_records
Revises:
Create Date: 2026-10-17

One JSONB document per (collection, id). ``version`` is the compare-and-set
guard for version-checked writes. A GIN index on ``document`` serves the
field-equality queries the pipeline and billing services issue.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001_records"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "records",
        sa.Column("collection", sa.String(100), primary_key=True),
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column(
            "document",
            JSONB(),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_index("ix_records_collection", "records", ["collection"])
    op.create_index(
        "ix_records_document_gin",
        "records",
        ["document"],
        postgresql_using="gin",
    )


def downgrade() -> None:
    op.drop_index("ix_records_document_gin", table_name="records")
    op.drop_index("ix_records_collection", table_name="records")
    op.drop_table("records")
