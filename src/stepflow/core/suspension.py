"""
Suspension manager
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from ..exceptions import DuplicateResumeError, UnknownSuspensionError
from ..models.workflow import Workflow
from ..models.execution import SuspensionRecord, SuspensionState, WorkflowContext
from ..storage.repository import InMemorySuspensionStore, SuspensionStore


logger = logging.getLogger(__name__)

TimeoutCallback = Callable[[str], Awaitable[None]]


class SuspensionManager:
    """
    Persists, claims and times out suspension records.

    A record moves active -> resumed exactly once (compare-and-set on its
    version). Abandoned records behave as if they never existed.
    """

    def __init__(self, store: SuspensionStore = None):
        self.store = store or InMemorySuspensionStore()
        self._timers: Dict[str, asyncio.Task] = {}
        self._on_timeout: Optional[TimeoutCallback] = None

    def set_timeout_callback(self, callback: TimeoutCallback) -> None:
        self._on_timeout = callback

    async def suspend(
        self,
        workflow: Workflow,
        context: WorkflowContext,
        step_id: str,
        arm: bool = True
    ) -> SuspensionRecord:
        """Snapshot the context with ``step_id`` as the cursor"""
        result = context.get_result(step_id)
        metadata = dict(result.suspension_metadata or {}) if result else {}
        step = workflow.get_step(step_id)

        record = SuspensionRecord(
            workflow_id=workflow.id,
            run_id=context.run_id,
            step_id=step_id,
            context=context.to_dict(),
            metadata=metadata,
            kind=step.kind.value if step else "function",
            events=list(metadata.get("events", [])),
            resume_after=metadata.get("resume_after"),
        )
        await self.store.save(record)
        logger.info(
            f"Run {context.run_id} suspended at step {step_id} "
            f"(suspension {record.suspension_id})"
        )
        if arm:
            self.arm(record)
        return record

    async def get(self, suspension_id: str) -> Optional[SuspensionRecord]:
        return await self.store.get(suspension_id)

    async def get_active(self, suspension_id: str) -> SuspensionRecord:
        """Fetch a record that can still be resumed"""
        record = await self.store.get(suspension_id)
        if record is None or record.state == SuspensionState.ABANDONED:
            raise UnknownSuspensionError(suspension_id)
        if record.state == SuspensionState.RESUMED:
            raise DuplicateResumeError(suspension_id)
        return record

    async def claim(self, suspension_id: str, expected_version: int = None) -> SuspensionRecord:
        """Move a record to resumed; only one caller can win"""
        if expected_version is None:
            expected_version = (await self.get_active(suspension_id)).version

        claimed = await self.store.transition(
            suspension_id, expected_version,
            SuspensionState.ACTIVE, SuspensionState.RESUMED
        )
        if claimed is None:
            # lost the race, or the record changed underneath us
            await self.get_active(suspension_id)
            raise DuplicateResumeError(suspension_id)

        self.disarm(suspension_id)
        logger.info(f"Claimed suspension {suspension_id} (version {claimed.version})")
        return claimed

    async def release(self, record: SuspensionRecord) -> None:
        """Undo a claim whose resume could not start"""
        released = await self.store.transition(
            record.suspension_id, record.version,
            SuspensionState.RESUMED, SuspensionState.ACTIVE
        )
        if released is not None:
            logger.warning(f"Released suspension {record.suspension_id} back to active")
            self.arm(released)

    async def abandon(self, suspension_id: str) -> bool:
        """Mark an active record abandoned; later resumes fail"""
        record = await self.store.get(suspension_id)
        if record is None or record.state != SuspensionState.ACTIVE:
            return False
        abandoned = await self.store.transition(
            suspension_id, record.version,
            SuspensionState.ACTIVE, SuspensionState.ABANDONED
        )
        if abandoned is None:
            return False
        self.disarm(suspension_id)
        logger.info(f"Abandoned suspension {suspension_id}")
        return True

    async def list_active(self) -> List[SuspensionRecord]:
        return await self.store.list_active()

    async def active_for_run(self, run_id: str) -> Optional[SuspensionRecord]:
        for record in await self.store.list_by_run(run_id):
            if record.is_active:
                return record
        return None

    # Timers

    def arm(self, record: SuspensionRecord) -> None:
        """Schedule the timeout fallback for a record with a deadline"""
        if record.resume_after is None or self._on_timeout is None:
            return
        self.disarm(record.suspension_id)
        self._timers[record.suspension_id] = asyncio.create_task(
            self._fire_after(record.suspension_id, record.resume_after)
        )
        logger.debug(f"Armed timeout for suspension {record.suspension_id}")

    def disarm(self, suspension_id: str) -> None:
        timer = self._timers.pop(suspension_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _fire_after(self, suspension_id: str, deadline: float) -> None:
        await asyncio.sleep(max(0.0, deadline - time.time()))
        self._timers.pop(suspension_id, None)
        logger.info(f"Suspension {suspension_id} timed out")
        try:
            await self._on_timeout(suspension_id)
        except (UnknownSuspensionError, DuplicateResumeError):
            logger.debug(f"Suspension {suspension_id} was resolved before its timeout fired")
        except Exception as e:
            logger.error(f"Timeout handling for suspension {suspension_id} failed: {e}", exc_info=True)

    async def recover_timeouts(self) -> int:
        """Re-arm timers for every active record with a deadline"""
        armed = 0
        for record in await self.store.list_active():
            if record.resume_after is not None:
                self.arm(record)
                armed += 1
        if armed:
            logger.info(f"Re-armed {armed} suspension timeout(s)")
        return armed

    async def shutdown(self) -> None:
        """Cancel all pending timers"""
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
