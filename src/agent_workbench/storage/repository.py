"""Persistence facade for workspaces, conversations, runs and chunk logs."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import exists, func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_workbench.agent.models import (
    TERMINAL_RUN_STATUSES,
    RunChunkView,
    RunStatus,
    RunView,
    StreamChunk,
    validate_run_transition,
)
from agent_workbench.conversation.models import (
    ConversationMessageView,
    ConversationStatus,
    ConversationView,
    MessageRole,
)
from agent_workbench.errors import (
    ConcurrentStatusChangeError,
    ConversationNotFoundError,
    ConversationNotOngoingError,
    RunInProgressError,
    RunNotFoundError,
    WorkspaceNotFoundError,
)
from agent_workbench.storage.alembic_runner import current_revision, upgrade_head
from agent_workbench.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_workbench.storage.sqlmodel_models import (
    AgentRunRow,
    AppUser,
    ConversationMessageRow,
    ConversationRow,
    RunChunkRow,
    WorkspaceRow,
)
from agent_workbench.workspace.models import SetupDispatch, WorkspaceStatus, WorkspaceView
from agent_workbench.workspace.state_machine import apply_transition, validate_transition

logger = logging.getLogger(__name__)

_APPEND_RETRIES = 5


class WorkbenchRepository:
    """Workbench persistence backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        workspace_root: Path = Path(".workspaces"),
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path
        self.workspace_root = workspace_root
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def schema_revision(self) -> str | None:
        return current_revision(self.engine)

    def workspace_path(self, workspace_id: str) -> Path:
        return self.workspace_root / workspace_id

    # Users

    def ensure_user(
        self,
        *,
        user_id: str,
        display_name: str | None = None,
        email: str | None = None,
    ) -> None:
        """Create the user row if missing; fill in email when newly known."""

        with Session(self.engine) as session:
            user = session.exec(select(AppUser).where(AppUser.user_id == user_id)).one_or_none()
            if user is None:
                session.add(
                    AppUser(
                        user_id=user_id,
                        display_name=display_name or user_id,
                        email=email,
                        created_at=utc_now(),
                    ),
                )
            elif email and user.email != email:
                user.email = email
                session.add(user)
            else:
                return
            try:
                session.commit()
            except IntegrityError:
                session.rollback()

    def get_user_email(self, *, user_id: str) -> str | None:
        with Session(self.engine) as session:
            user = session.exec(select(AppUser).where(AppUser.user_id == user_id)).one_or_none()
        return user.email if user is not None else None

    # Workspaces

    def get_workspace(self, *, workspace_id: str) -> WorkspaceView | None:
        with Session(self.engine) as session:
            row = session.get(WorkspaceRow, workspace_id)
            return self._to_workspace_view(row) if row is not None else None

    def get_workspace_or_fail(self, *, workspace_id: str) -> WorkspaceView:
        workspace = self.get_workspace(workspace_id=workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(f"Workspace not found: {workspace_id}")
        return workspace

    def find_workspace_by_project(self, *, project_id: str) -> WorkspaceView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(WorkspaceRow).where(WorkspaceRow.project_id == project_id),
            ).one_or_none()
            return self._to_workspace_view(row) if row is not None else None

    def claim_workspace_for_setup(self, *, project_id: str) -> SetupDispatch:
        """Find or create the project's workspace and claim it for setup.

        Runs in one transaction. The unique index on ``project_id`` resolves
        two concurrent creators: the loser re-reads the winner's row.
        """

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = session.exec(
                    select(WorkspaceRow).where(WorkspaceRow.project_id == project_id),
                ).one_or_none()

                if row is None:
                    row = WorkspaceRow(
                        workspace_id=str(uuid4()),
                        project_id=project_id,
                        status=WorkspaceStatus.IN_SETUP.value,
                        created_at=now,
                        updated_at=now,
                    )
                    validate_transition(
                        WorkspaceStatus.AVAILABLE_FOR_SETUP,
                        WorkspaceStatus.IN_SETUP,
                    )
                    session.add(row)
                    try:
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        logger.debug("Lost workspace create race for project %s", project_id)
                        continue
                    session.refresh(row)
                    return SetupDispatch(workspace=self._to_workspace_view(row), claimed=True)

                current = WorkspaceStatus(row.status)
                if current != WorkspaceStatus.AVAILABLE_FOR_SETUP:
                    return SetupDispatch(workspace=self._to_workspace_view(row), claimed=False)

                applied = apply_transition(
                    session,
                    workspace_id=row.workspace_id,
                    expected=current,
                    target=WorkspaceStatus.IN_SETUP,
                )
                if not applied:
                    session.rollback()
                    continue
                session.commit()
                claimed = session.get(WorkspaceRow, row.workspace_id, populate_existing=True)
                if claimed is None:
                    raise WorkspaceNotFoundError(f"Workspace not found: {row.workspace_id}")
                return SetupDispatch(workspace=self._to_workspace_view(claimed), claimed=True)

    def compare_and_set_workspace_status(
        self,
        *,
        workspace_id: str,
        expected: WorkspaceStatus,
        target: WorkspaceStatus,
        branch_name: str | None = None,
    ) -> WorkspaceView:
        """Apply a legal ``expected -> target`` only if the row still holds ``expected``."""

        with Session(self.engine) as session:
            applied = apply_transition(
                session,
                workspace_id=workspace_id,
                expected=expected,
                target=target,
                branch_name=branch_name,
            )
            if not applied:
                session.rollback()
                raise ConcurrentStatusChangeError("workspace", expected.value, target.value)
            session.commit()
        return self.get_workspace_or_fail(workspace_id=workspace_id)

    def overwrite_workspace_status(
        self,
        *,
        workspace_id: str,
        target: WorkspaceStatus,
    ) -> WorkspaceView:
        """Unconditional status write; callers own the decision to bypass validation."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkspaceRow)
                .where(col(WorkspaceRow.workspace_id) == workspace_id)
                .values(status=target.value, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                raise WorkspaceNotFoundError(f"Workspace not found: {workspace_id}")
            session.commit()
        return self.get_workspace_or_fail(workspace_id=workspace_id)

    def list_workspaces(self, *, status: WorkspaceStatus | None = None) -> list[WorkspaceView]:
        with Session(self.engine) as session:
            statement = select(WorkspaceRow).order_by(col(WorkspaceRow.created_at).desc())
            if status is not None:
                statement = statement.where(WorkspaceRow.status == status.value)
            rows = session.exec(statement).all()
            return [self._to_workspace_view(row) for row in rows]

    # Conversations

    def find_ongoing_conversation(self, *, workspace_id: str) -> ConversationView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ConversationRow).where(
                    ConversationRow.workspace_id == workspace_id,
                    ConversationRow.status == ConversationStatus.ONGOING.value,
                ),
            ).first()
            return _to_conversation_view(row) if row is not None else None

    def get_conversation(self, *, conversation_id: str) -> ConversationView | None:
        with Session(self.engine) as session:
            row = session.get(ConversationRow, conversation_id)
            return _to_conversation_view(row) if row is not None else None

    def get_conversation_or_fail(self, *, conversation_id: str) -> ConversationView:
        conversation = self.get_conversation(conversation_id=conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation not found: {conversation_id}")
        return conversation

    def open_conversation(self, *, workspace_id: str, user_id: str) -> ConversationView | None:
        """Claim the workspace for conversation and create the row in one transaction.

        Returns ``None`` when the claim is lost: the workspace left
        ``AVAILABLE_FOR_CONVERSATION`` or another ongoing conversation won
        the partial unique index.
        """

        now = utc_now()
        with Session(self.engine) as session:
            claimed = apply_transition(
                session,
                workspace_id=workspace_id,
                expected=WorkspaceStatus.AVAILABLE_FOR_CONVERSATION,
                target=WorkspaceStatus.IN_CONVERSATION,
            )
            if not claimed:
                session.rollback()
                return None

            row = ConversationRow(
                conversation_id=str(uuid4()),
                workspace_id=workspace_id,
                user_id=user_id,
                status=ConversationStatus.ONGOING.value,
                workspace_path=str(self.workspace_path(workspace_id)),
                last_activity_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            session.refresh(row)
            return _to_conversation_view(row)

    def finish_conversation(self, *, conversation_id: str) -> bool:
        """Mark an ongoing conversation finished. Returns False if it was not ongoing."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ConversationRow)
                .where(
                    col(ConversationRow.conversation_id) == conversation_id,
                    col(ConversationRow.status) == ConversationStatus.ONGOING.value,
                )
                .values(
                    status=ConversationStatus.FINISHED.value,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def touch_conversation(self, *, conversation_id: str) -> bool:
        """Record user activity on an ongoing conversation."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ConversationRow)
                .where(
                    col(ConversationRow.conversation_id) == conversation_id,
                    col(ConversationRow.status) == ConversationStatus.ONGOING.value,
                )
                .values(last_activity_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def set_conversation_session_state(self, *, conversation_id: str, state: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(ConversationRow)
                .where(col(ConversationRow.conversation_id) == conversation_id)
                .values(backend_session_state=state, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()

    def list_stale_conversations(self, *, cutoff: datetime) -> list[ConversationView]:
        """Ongoing conversations idle since before ``cutoff``.

        Conversations with a running or cancelling run are skipped.
        """

        live_run = exists().where(
            col(AgentRunRow.conversation_id) == col(ConversationRow.conversation_id),
            col(AgentRunRow.status).in_(
                [RunStatus.RUNNING.value, RunStatus.CANCELLING.value],
            ),
        )
        last_seen = func.coalesce(
            col(ConversationRow.last_activity_at),
            col(ConversationRow.created_at),
        )
        with Session(self.engine) as session:
            rows = session.exec(
                select(ConversationRow)
                .where(
                    ConversationRow.status == ConversationStatus.ONGOING.value,
                    ~live_run,
                    last_seen < to_db_datetime(cutoff),
                )
                .order_by(col(ConversationRow.created_at).asc()),
            ).all()
            return [_to_conversation_view(row) for row in rows]

    def append_conversation_message(
        self,
        *,
        conversation_id: str,
        role: MessageRole,
        content: str,
    ) -> int:
        """Append one message at the next sequence number and return it."""

        for _ in range(_APPEND_RETRIES):
            with Session(self.engine) as session:
                last = session.exec(
                    select(func.max(col(ConversationMessageRow.sequence))).where(
                        ConversationMessageRow.conversation_id == conversation_id,
                    ),
                ).one()
                sequence = (last or 0) + 1
                session.add(
                    ConversationMessageRow(
                        conversation_id=conversation_id,
                        sequence=sequence,
                        role=role.value,
                        content=content,
                        created_at=utc_now(),
                    ),
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                return sequence
        raise RuntimeError(
            f"Could not append message to conversation {conversation_id} "
            f"after {_APPEND_RETRIES} attempts.",
        )

    def list_conversation_messages(self, *, conversation_id: str) -> list[ConversationMessageView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ConversationMessageRow)
                .where(ConversationMessageRow.conversation_id == conversation_id)
                .order_by(col(ConversationMessageRow.sequence).asc()),
            ).all()
            return [
                ConversationMessageView(
                    sequence=row.sequence,
                    role=MessageRole(row.role),
                    content=row.content,
                    created_at=to_utc_aware_datetime(row.created_at),
                )
                for row in rows
            ]

    # Runs

    def create_run(self, *, conversation_id: str, instruction: str) -> RunView:
        """Create a pending run on an ongoing conversation.

        The conversation activity update comes first so the transaction holds
        the write lock while checking for an unfinished run.
        """

        conversation = self.get_conversation_or_fail(conversation_id=conversation_id)
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ConversationRow)
                .where(
                    col(ConversationRow.conversation_id) == conversation_id,
                    col(ConversationRow.status) == ConversationStatus.ONGOING.value,
                )
                .values(last_activity_at=to_db_datetime(now), updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConversationNotOngoingError(
                    f"Conversation is not ongoing: {conversation_id}",
                )
            active = session.exec(
                select(AgentRunRow.run_id).where(
                    AgentRunRow.conversation_id == conversation_id,
                    col(AgentRunRow.status).not_in(
                        [status.value for status in TERMINAL_RUN_STATUSES],
                    ),
                ),
            ).first()
            if active is not None:
                session.rollback()
                raise RunInProgressError(
                    f"Conversation {conversation_id} already has an unfinished run: {active}",
                )
            row = AgentRunRow(
                run_id=str(uuid4()),
                conversation_id=conversation_id,
                workspace_id=conversation.workspace_id,
                instruction=instruction,
                status=RunStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def get_run(self, *, run_id: str) -> RunView | None:
        with Session(self.engine) as session:
            row = session.get(AgentRunRow, run_id)
            return _to_run_view(row) if row is not None else None

    def get_run_or_fail(self, *, run_id: str) -> RunView:
        run = self.get_run(run_id=run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return run

    def get_run_status(self, *, run_id: str) -> RunStatus | None:
        """Cheap status read used on every orchestrator poll tick."""

        with Session(self.engine) as session:
            status = session.exec(
                select(AgentRunRow.status).where(AgentRunRow.run_id == run_id),
            ).one_or_none()
        return RunStatus(status) if status is not None else None

    def list_runs(self, *, conversation_id: str) -> list[RunView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentRunRow)
                .where(AgentRunRow.conversation_id == conversation_id)
                .order_by(col(AgentRunRow.created_at).asc()),
            ).all()
            return [_to_run_view(row) for row in rows]

    def transition_run(
        self,
        *,
        run_id: str,
        target: RunStatus,
        expected: RunStatus | None = None,
        done: StreamChunk | None = None,
        error_message: str | None = None,
        backend_session_state: str | None = None,
    ) -> RunView:
        """Validate and apply a run status change, optionally writing a Done chunk.

        The status update and the Done chunk commit together, so a terminal
        chunk exists only for the writer that actually closed the run.
        """

        current = expected or self.get_run_or_fail(run_id=run_id).status
        validate_run_transition(current, target)

        now = utc_now()
        values: dict[str, object] = {
            "status": target.value,
            "updated_at": to_db_datetime(now),
        }
        if target == RunStatus.RUNNING:
            values["started_at"] = to_db_datetime(now)
        elif target == RunStatus.CANCELLING:
            values["cancel_requested_at"] = to_db_datetime(now)
        else:
            values["finished_at"] = to_db_datetime(now)
        if error_message is not None:
            values["error_message"] = error_message
        if backend_session_state is not None:
            values["backend_session_state"] = backend_session_state

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentRunRow)
                .where(
                    col(AgentRunRow.run_id) == run_id,
                    col(AgentRunRow.status) == current.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConcurrentStatusChangeError("run", current.value, target.value)
            if done is not None:
                self._insert_chunk(session=session, run_id=run_id, chunk=done)
            session.commit()
        return self.get_run_or_fail(run_id=run_id)

    def list_runs_stuck_in(self, *, status: RunStatus, cutoff: datetime) -> list[RunView]:
        """Runs that have held ``status`` since before ``cutoff``."""

        if status == RunStatus.RUNNING:
            since = func.coalesce(col(AgentRunRow.started_at), col(AgentRunRow.created_at))
        elif status == RunStatus.CANCELLING:
            since = func.coalesce(
                col(AgentRunRow.cancel_requested_at),
                col(AgentRunRow.created_at),
            )
        else:
            since = col(AgentRunRow.created_at)
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentRunRow)
                .where(
                    AgentRunRow.status == status.value,
                    since < to_db_datetime(cutoff),
                )
                .order_by(col(AgentRunRow.created_at).asc()),
            ).all()
            return [_to_run_view(row) for row in rows]

    # Chunk log

    def append_chunk(self, *, run_id: str, chunk: StreamChunk) -> int:
        """Append one chunk at the next per-run sequence number and return it."""

        for _ in range(_APPEND_RETRIES):
            with Session(self.engine) as session:
                sequence = self._insert_chunk(session=session, run_id=run_id, chunk=chunk)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                return sequence
        raise RuntimeError(
            f"Could not append chunk to run {run_id} after {_APPEND_RETRIES} attempts.",
        )

    def last_chunk_sequence(self, *, run_id: str) -> int:
        with Session(self.engine) as session:
            last = session.exec(
                select(func.max(col(RunChunkRow.sequence))).where(RunChunkRow.run_id == run_id),
            ).one()
        return last or 0

    def list_chunks(
        self,
        *,
        run_id: str,
        after_sequence: int = 0,
        limit: int = 100,
    ) -> list[RunChunkView]:
        """Chunks with ``sequence > after_sequence`` in append order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(RunChunkRow)
                .where(
                    RunChunkRow.run_id == run_id,
                    RunChunkRow.sequence > after_sequence,
                )
                .order_by(col(RunChunkRow.sequence).asc())
                .limit(limit),
            ).all()
            return [_to_chunk_view(row) for row in rows]

    def _insert_chunk(self, *, session: Session, run_id: str, chunk: StreamChunk) -> int:
        last = session.exec(
            select(func.max(col(RunChunkRow.sequence))).where(RunChunkRow.run_id == run_id),
        ).one()
        sequence = (last or 0) + 1
        session.add(
            RunChunkRow(
                run_id=run_id,
                sequence=sequence,
                chunk_type=chunk.chunk_type.value,
                payload_json=json.dumps(chunk.payload(), ensure_ascii=False, sort_keys=True),
                created_at=utc_now(),
            ),
        )
        return sequence

    def _to_workspace_view(self, row: WorkspaceRow) -> WorkspaceView:
        return WorkspaceView(
            workspace_id=row.workspace_id,
            project_id=row.project_id,
            status=WorkspaceStatus(row.status),
            branch_name=row.branch_name,
            workspace_path=str(self.workspace_path(row.workspace_id)),
            created_at=to_utc_aware_datetime(row.created_at),
            updated_at=to_utc_aware_datetime(row.updated_at),
        )


def _to_conversation_view(row: ConversationRow) -> ConversationView:
    return ConversationView(
        conversation_id=row.conversation_id,
        workspace_id=row.workspace_id,
        user_id=row.user_id,
        status=ConversationStatus(row.status),
        workspace_path=row.workspace_path,
        backend_session_state=row.backend_session_state,
        last_activity_at=optional_utc(row.last_activity_at),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_run_view(row: AgentRunRow) -> RunView:
    return RunView(
        run_id=row.run_id,
        conversation_id=row.conversation_id,
        workspace_id=row.workspace_id,
        instruction=row.instruction,
        status=RunStatus(row.status),
        backend_session_state=row.backend_session_state,
        error_message=row.error_message,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        cancel_requested_at=optional_utc(row.cancel_requested_at),
        finished_at=optional_utc(row.finished_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_chunk_view(row: RunChunkRow) -> RunChunkView:
    payload = json.loads(row.payload_json) if row.payload_json else {}
    return RunChunkView(
        run_id=row.run_id,
        sequence=row.sequence,
        chunk=StreamChunk.from_wire({"chunkType": row.chunk_type, **payload}),
        created_at=to_utc_aware_datetime(row.created_at),
    )
