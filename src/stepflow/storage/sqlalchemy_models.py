"""
SQLAlchemy table models
"""
from sqlalchemy import (
    Column, String, Integer, Float, JSON, CheckConstraint, Index
)
from sqlalchemy.orm import declarative_base


Base = declarative_base()


class SuspensionRecordModel(Base):
    """Suspended run snapshot"""
    __tablename__ = 'suspension_records'

    suspension_id = Column(String(64), primary_key=True)
    workflow_id = Column(String(255), nullable=False)
    run_id = Column(String(64), nullable=False)
    step_id = Column(String(255), nullable=False)
    kind = Column(String(50), nullable=False, default='function')
    state = Column(String(20), nullable=False, default='active')
    version = Column(Integer, nullable=False, default=1)
    context = Column(JSON, nullable=False)
    meta = Column('metadata', JSON, default=dict)
    events = Column(JSON, default=list)
    resume_after = Column(Float)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "state IN ('active', 'resumed', 'abandoned')",
            name='check_suspension_state'
        ),
        Index('idx_suspension_records_state', 'state'),
        Index('idx_suspension_records_run_id', 'run_id'),
        Index('idx_suspension_records_resume_after', 'resume_after'),
    )


class WorkflowRunModel(Base):
    """Run history row"""
    __tablename__ = 'workflow_runs'

    run_id = Column(String(64), primary_key=True)
    workflow_id = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False)
    context = Column(JSON, default=dict)
    result = Column(JSON)
    suspension_id = Column(String(64))
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'suspended', 'completed', 'failed', 'cancelled')",
            name='check_run_status'
        ),
        Index('idx_workflow_runs_workflow_id', 'workflow_id'),
        Index('idx_workflow_runs_status', 'status'),
        Index('idx_workflow_runs_created_at', 'created_at'),
    )
