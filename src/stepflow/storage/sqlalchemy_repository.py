"""
SQLAlchemy store implementations
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from sqlalchemy import select, update, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from ..exceptions import StorageError
from ..models.execution import RunStatus, SuspensionRecord, SuspensionState, WorkflowRun
from .repository import RunRepository, SuspensionStore
from .sqlalchemy_models import Base, SuspensionRecordModel, WorkflowRunModel


logger = logging.getLogger(__name__)


class DatabaseManager:
    """Owns the async engine and session factory"""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    async def initialize(self, create_tables: bool = True):
        """Open the engine and create tables"""
        options = {"echo": self.echo, "pool_pre_ping": True}
        if not self.database_url.startswith("sqlite"):
            options.update(pool_size=20, max_overflow=10)

        self.engine = create_async_engine(self.database_url, **options)
        self.async_session_maker = async_sessionmaker(self.engine, expire_on_commit=False)

        if create_tables:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database initialised: {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self):
        if self.engine:
            await self.engine.dispose()
            self.engine = None

    @asynccontextmanager
    async def get_session(self):
        """Session committed on success, rolled back on error"""
        if self.async_session_maker is None:
            raise StorageError("DatabaseManager.initialize() has not been called")
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StorageError(f"Database operation failed: {e}") from e
            except Exception:
                await session.rollback()
                raise


def _record_from_row(row: SuspensionRecordModel) -> SuspensionRecord:
    return SuspensionRecord(
        suspension_id=row.suspension_id,
        workflow_id=row.workflow_id,
        run_id=row.run_id,
        step_id=row.step_id,
        context=row.context,
        metadata=row.meta or {},
        kind=row.kind,
        events=row.events or [],
        resume_after=row.resume_after,
        state=SuspensionState(row.state),
        version=row.version,
        created_at=row.created_at,
    )


def _run_from_row(row: WorkflowRunModel) -> WorkflowRun:
    return WorkflowRun(
        run_id=row.run_id,
        workflow_id=row.workflow_id,
        status=RunStatus(row.status),
        context=row.context or {},
        result=row.result,
        suspension_id=row.suspension_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SQLAlchemySuspensionStore(SuspensionStore):
    """Durable suspension store"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, record: SuspensionRecord) -> str:
        async with self.db.get_session() as session:
            await session.merge(SuspensionRecordModel(
                suspension_id=record.suspension_id,
                workflow_id=record.workflow_id,
                run_id=record.run_id,
                step_id=record.step_id,
                kind=record.kind,
                state=record.state.value,
                version=record.version,
                context=record.context,
                meta=record.metadata,
                events=record.events,
                resume_after=record.resume_after,
                created_at=record.created_at,
            ))
        return record.suspension_id

    async def get(self, suspension_id: str) -> Optional[SuspensionRecord]:
        async with self.db.get_session() as session:
            row = await session.get(SuspensionRecordModel, suspension_id)
            return _record_from_row(row) if row else None

    async def transition(
        self,
        suspension_id: str,
        expected_version: int,
        from_state: SuspensionState,
        to_state: SuspensionState
    ) -> Optional[SuspensionRecord]:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(SuspensionRecordModel)
                .where(
                    SuspensionRecordModel.suspension_id == suspension_id,
                    SuspensionRecordModel.state == from_state.value,
                    SuspensionRecordModel.version == expected_version,
                )
                .values(state=to_state.value, version=SuspensionRecordModel.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            row = (await session.execute(
                select(SuspensionRecordModel)
                .where(SuspensionRecordModel.suspension_id == suspension_id)
                .execution_options(populate_existing=True)
            )).scalar_one()
            return _record_from_row(row)

    async def list_active(self) -> List[SuspensionRecord]:
        async with self.db.get_session() as session:
            rows = (await session.execute(
                select(SuspensionRecordModel)
                .where(SuspensionRecordModel.state == SuspensionState.ACTIVE.value)
                .order_by(SuspensionRecordModel.created_at)
            )).scalars().all()
            return [_record_from_row(row) for row in rows]

    async def list_by_run(self, run_id: str) -> List[SuspensionRecord]:
        async with self.db.get_session() as session:
            rows = (await session.execute(
                select(SuspensionRecordModel)
                .where(SuspensionRecordModel.run_id == run_id)
                .order_by(SuspensionRecordModel.created_at)
            )).scalars().all()
            return [_record_from_row(row) for row in rows]

    async def delete(self, suspension_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(SuspensionRecordModel).where(SuspensionRecordModel.suspension_id == suspension_id)
            )
            return result.rowcount > 0


class SQLAlchemyRunRepository(RunRepository):
    """Durable run history"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, run: WorkflowRun) -> str:
        run.updated_at = time.time()
        async with self.db.get_session() as session:
            await session.merge(WorkflowRunModel(
                run_id=run.run_id,
                workflow_id=run.workflow_id,
                status=run.status.value,
                context=run.context,
                result=run.result,
                suspension_id=run.suspension_id,
                created_at=run.created_at,
                updated_at=run.updated_at,
            ))
        return run.run_id

    async def get(self, run_id: str) -> Optional[WorkflowRun]:
        async with self.db.get_session() as session:
            row = await session.get(WorkflowRunModel, run_id)
            return _run_from_row(row) if row else None

    async def list_by_workflow(
        self,
        workflow_id: str,
        status: RunStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowRun]:
        async with self.db.get_session() as session:
            query = select(WorkflowRunModel).where(WorkflowRunModel.workflow_id == workflow_id)
            if status:
                query = query.where(WorkflowRunModel.status == status.value)
            query = query.order_by(WorkflowRunModel.created_at).offset(offset).limit(limit)
            rows = (await session.execute(query)).scalars().all()
            return [_run_from_row(row) for row in rows]

    async def delete(self, run_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(WorkflowRunModel).where(WorkflowRunModel.run_id == run_id)
            )
            return result.rowcount > 0
