"""Add lookup indexes for log queries and interrupted-command scans.

Revision ID: 0002_log_indexes
Revises: 0001_initial
Create Date: 2026-09-20
"""

from collections.abc import Sequence

from alembic import op

revision: str = "0002_log_indexes"
down_revision: str | None = "0001_initial"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_index("idx_package_log_package", "package_log", ["name", "manager"])
    op.create_index("idx_package_log_command", "package_log", ["command_id"])
    op.create_index("idx_package_log_timestamp", "package_log", ["timestamp"])
    op.create_index("idx_command_history_end_ts", "command_history", ["end_ts"])
    op.create_index("idx_package_tags_tag", "package_tags", ["tag_id"])


def downgrade() -> None:
    op.drop_index("idx_package_tags_tag", table_name="package_tags")
    op.drop_index("idx_command_history_end_ts", table_name="command_history")
    op.drop_index("idx_package_log_timestamp", table_name="package_log")
    op.drop_index("idx_package_log_command", table_name="package_log")
    op.drop_index("idx_package_log_package", table_name="package_log")
