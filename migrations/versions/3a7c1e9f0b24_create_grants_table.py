"""create_grants_table

Revision ID: 3a7c1e9f0b24
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""
import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "3a7c1e9f0b24"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "grants",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("resource_path", sa.String(length=1024), nullable=False),
        sa.Column("expires_at", sa.BigInteger(), nullable=False),
        sa.Column(
            "state",
            sa.Enum("ACTIVE", "CONSUMED", name="grantstate", native_enum=False, length=16),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("consumed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    # Retention sweep filters on expiry
    op.create_index("ix_grants_expires_at", "grants", ["expires_at"], unique=False)


def downgrade():
    op.drop_index("ix_grants_expires_at", table_name="grants")
    op.drop_table("grants")
