"""Initial ledger schema.

Revision ID: 0001_initial
Revises: None
Create Date: 2026-09-02
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "command_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("start_ts", sa.DateTime(), nullable=False),
        sa.Column("end_ts", sa.DateTime(), nullable=True),
        sa.Column("version", sa.String(), nullable=True),
        sa.Column("command_string", sa.Text(), nullable=True),
        sa.Column("pm_command_string", sa.Text(), nullable=True),
        sa.Column("exit_code", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
    )

    op.create_table(
        "current_packages",
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("manager", sa.String(), nullable=False),
        sa.Column("origin", sa.String(), nullable=True),
        sa.Column("version", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("install_ts", sa.DateTime(), nullable=True),
        sa.Column("last_updated_ts", sa.DateTime(), nullable=False),
        sa.Column("checksum", sa.String(), nullable=True),
        sa.Column("signature", sa.Text(), nullable=True),
        sa.Column("license", sa.String(), nullable=True),
        sa.Column("size", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("name", "manager"),
    )

    op.create_table(
        "package_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "command_id",
            sa.Integer(),
            sa.ForeignKey("command_history.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("manager", sa.String(), nullable=False),
        sa.Column("origin", sa.String(), nullable=True),
        sa.Column("version", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("install_ts", sa.DateTime(), nullable=True),
        sa.Column("checksum", sa.String(), nullable=True),
        sa.Column("signature", sa.Text(), nullable=True),
        sa.Column("license", sa.String(), nullable=True),
        sa.Column("size", sa.BigInteger(), nullable=True),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
    )

    op.create_table(
        "package_tags",
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("manager", sa.String(), nullable=False),
        sa.Column(
            "tag_id",
            sa.Integer(),
            sa.ForeignKey("tags.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("name", "manager", "tag_id"),
        sa.ForeignKeyConstraint(
            ["name", "manager"],
            ["current_packages.name", "current_packages.manager"],
            ondelete="CASCADE",
        ),
    )


def downgrade() -> None:
    op.drop_table("package_tags")
    op.drop_table("tags")
    op.drop_table("package_log")
    op.drop_table("current_packages")
    op.drop_table("command_history")
