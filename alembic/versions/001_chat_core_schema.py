"""Chat core schema.

Revision ID: 001
Revises:
Create Date: 2026-10-17

Tables:
- users: identities provisioned by the auth provider (admin flag)
- user_requests: admitted calls, counted for the daily quota
- chats / messages: transcripts, messages fully replaced on each save
- streams: generation attempts per chat, for resume
- cache_entries: memoized operation results (database cache backend)
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "user_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("request_date", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    # Daily quota count: WHERE user_id = ? AND request_date >= ?
    op.create_index("ix_user_requests_user_date", "user_requests", ["user_id", "request_date"])

    op.create_table(
        "chats",
        sa.Column("id", sa.String(255), nullable=False, comment="Client-supplied id"),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_chats_user_updated", "chats", ["user_id", "updated_at"])

    op.create_table(
        "messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("chat_id", sa.String(255), nullable=False),
        sa.Column("role", sa.String(20), nullable=False, comment="user | assistant | system | tool"),
        sa.Column("parts", postgresql.JSONB(), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False, comment="Zero-based position in the chat"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["chat_id"], ["chats.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chat_id", "order", name="uq_messages_chat_order"),
    )
    op.create_index("ix_messages_chat_id", "messages", ["chat_id"])

    op.create_table(
        "streams",
        sa.Column("id", sa.String(255), nullable=False),
        sa.Column("chat_id", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["chat_id"], ["chats.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_streams_chat_created", "streams", ["chat_id", "created_at"])

    op.create_table(
        "cache_entries",
        sa.Column("key", sa.String(255), nullable=False, comment="{prefix}:{operation}:{sha256 of args}"),
        sa.Column("operation", sa.String(128), nullable=False),
        sa.Column("value", sa.Text(), nullable=False, comment="JSON-serialized result"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )
    # Index for TTL cleanup
    op.create_index("ix_cache_entries_expires_at", "cache_entries", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_cache_entries_expires_at", table_name="cache_entries")
    op.drop_table("cache_entries")
    op.drop_index("ix_streams_chat_created", table_name="streams")
    op.drop_table("streams")
    op.drop_index("ix_messages_chat_id", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_chats_user_updated", table_name="chats")
    op.drop_table("chats")
    op.drop_index("ix_user_requests_user_date", table_name="user_requests")
    op.drop_table("user_requests")
    op.drop_table("users")
