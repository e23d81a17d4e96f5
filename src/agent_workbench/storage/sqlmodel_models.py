"""SQLModel ORM tables for workspaces, conversations and agent runs."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    email: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkspaceRow(SQLModel, table=True):
    __tablename__ = "workspaces"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("project_id", name="uq_workspaces_project"),
        Index("idx_workspaces_status", "status"),
    )

    workspace_id: str = Field(primary_key=True)
    project_id: str = Field(nullable=False)
    status: str
    branch_name: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ConversationRow(SQLModel, table=True):
    __tablename__ = "conversations"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_conversations_workspace_ongoing",
            "workspace_id",
            unique=True,
            sqlite_where=text("status = 'ongoing'"),
        ),
        Index("idx_conversations_status_activity", "status", "last_activity_at"),
    )

    conversation_id: str = Field(primary_key=True)
    workspace_id: str = Field(
        sa_column=Column(
            ForeignKey("workspaces.workspace_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    status: str = Field(index=True)
    workspace_path: str
    backend_session_state: str | None = None
    last_activity_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ConversationMessageRow(SQLModel, table=True):
    __tablename__ = "conversation_messages"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "conversation_id",
            "sequence",
            name="uq_conversation_messages_sequence",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    conversation_id: str = Field(
        sa_column=Column(
            ForeignKey("conversations.conversation_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sequence: int
    role: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentRunRow(SQLModel, table=True):
    __tablename__ = "agent_runs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_runs_status_time", "status", "created_at"),)

    run_id: str = Field(primary_key=True)
    conversation_id: str = Field(
        sa_column=Column(
            ForeignKey("conversations.conversation_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    workspace_id: str = Field(index=True)
    instruction: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    backend_session_state: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    cancel_requested_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RunChunkRow(SQLModel, table=True):
    __tablename__ = "run_chunks"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("run_id", "sequence", name="uq_run_chunks_sequence"),)

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sequence: int
    chunk_type: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
