"""
Storage interfaces
"""
import asyncio
import copy
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..models.execution import RunStatus, SuspensionRecord, SuspensionState, WorkflowRun


class SuspensionStore(ABC):
    """
    Durable store for suspension records, keyed by suspension id.

    ``transition`` is a compare-and-set on ``(state, version)``: at most one
    caller can move a given version of a record out of a state.
    """

    @abstractmethod
    async def save(self, record: SuspensionRecord) -> str:
        """Insert or overwrite a record"""
        pass

    @abstractmethod
    async def get(self, suspension_id: str) -> Optional[SuspensionRecord]:
        pass

    @abstractmethod
    async def transition(
        self,
        suspension_id: str,
        expected_version: int,
        from_state: SuspensionState,
        to_state: SuspensionState
    ) -> Optional[SuspensionRecord]:
        """Move a record between states; None when the precondition failed"""
        pass

    @abstractmethod
    async def list_active(self) -> List[SuspensionRecord]:
        pass

    @abstractmethod
    async def list_by_run(self, run_id: str) -> List[SuspensionRecord]:
        pass

    @abstractmethod
    async def delete(self, suspension_id: str) -> bool:
        pass


class RunRepository(ABC):
    """Run history"""

    @abstractmethod
    async def save(self, run: WorkflowRun) -> str:
        """Insert or update a run"""
        pass

    @abstractmethod
    async def get(self, run_id: str) -> Optional[WorkflowRun]:
        pass

    @abstractmethod
    async def list_by_workflow(
        self,
        workflow_id: str,
        status: RunStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowRun]:
        pass

    @abstractmethod
    async def delete(self, run_id: str) -> bool:
        pass


# In-memory implementations (non-durable, for development and tests)
class InMemorySuspensionStore(SuspensionStore):
    """In-memory suspension store"""

    def __init__(self):
        self.records: Dict[str, SuspensionRecord] = {}
        self._lock = asyncio.Lock()

    async def save(self, record: SuspensionRecord) -> str:
        async with self._lock:
            self.records[record.suspension_id] = copy.deepcopy(record)
        return record.suspension_id

    async def get(self, suspension_id: str) -> Optional[SuspensionRecord]:
        record = self.records.get(suspension_id)
        return copy.deepcopy(record) if record else None

    async def transition(
        self,
        suspension_id: str,
        expected_version: int,
        from_state: SuspensionState,
        to_state: SuspensionState
    ) -> Optional[SuspensionRecord]:
        async with self._lock:
            record = self.records.get(suspension_id)
            if record is None or record.state != from_state or record.version != expected_version:
                return None
            record.state = to_state
            record.version += 1
            return copy.deepcopy(record)

    async def list_active(self) -> List[SuspensionRecord]:
        return [
            copy.deepcopy(record)
            for record in sorted(self.records.values(), key=lambda r: r.created_at)
            if record.state == SuspensionState.ACTIVE
        ]

    async def list_by_run(self, run_id: str) -> List[SuspensionRecord]:
        return [
            copy.deepcopy(record)
            for record in sorted(self.records.values(), key=lambda r: r.created_at)
            if record.run_id == run_id
        ]

    async def delete(self, suspension_id: str) -> bool:
        async with self._lock:
            return self.records.pop(suspension_id, None) is not None


class InMemoryRunRepository(RunRepository):
    """In-memory run repository"""

    def __init__(self):
        self.runs: Dict[str, WorkflowRun] = {}

    async def save(self, run: WorkflowRun) -> str:
        run.updated_at = time.time()
        self.runs[run.run_id] = copy.deepcopy(run)
        return run.run_id

    async def get(self, run_id: str) -> Optional[WorkflowRun]:
        run = self.runs.get(run_id)
        return copy.deepcopy(run) if run else None

    async def list_by_workflow(
        self,
        workflow_id: str,
        status: RunStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowRun]:
        results = []
        for run in sorted(self.runs.values(), key=lambda r: r.created_at):
            if run.workflow_id != workflow_id:
                continue
            if status and run.status != status:
                continue
            results.append(copy.deepcopy(run))

        return results[offset:offset + limit]

    async def delete(self, run_id: str) -> bool:
        return self.runs.pop(run_id, None) is not None
