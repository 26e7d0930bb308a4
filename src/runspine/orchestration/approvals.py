"""Approval Coordinator — human decisions on paused MANUAL steps.

A MANUAL step leaves behind a PENDING :class:`Approval` and a PAUSED
step row while its execution stays RUNNING.  This module turns the
decision into state:

=========  ================  =================================  ==================
Decision   Approval          Step row                           Execution
=========  ================  =================================  ==================
approve    APPROVED          SUCCESS, ``output.approved``       resumed at index+1
reject     REJECTED          FAILED, ``output.rejected``        FAILED
expire     EXPIRED           FAILED, ``output.expired``         FAILED
=========  ================  =================================  ==================

With ``require_all_approvers`` each approval is recorded in
``approved_by`` and the request stays PENDING until every required
approver has approved.

All status changes are compare-and-set, so a second approve (or a reject
after an approve) fails with :class:`ApprovalAlreadyProcessedError`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from runspine.core.errors import (
    ApprovalAlreadyProcessedError,
    ApprovalError,
    ApprovalExpiredError,
    ApprovalNotFoundError,
    ApprovalPermissionError,
    ErrorCategory,
    ExecutionStateError,
)
from runspine.core.events import (
    EXECUTION_FAILED,
    STEP_APPROVED,
    STEP_EXPIRED,
    STEP_REJECTED,
    EventBus,
    ExecutionEvent,
)
from runspine.core.logging import get_logger
from runspine.core.store import RunbookStore
from runspine.orchestration.context import ExecutionContext
from runspine.orchestration.engine import ExecutionEngine
from runspine.orchestration.models import (
    Approval,
    ApprovalStatus,
    Execution,
    ExecutionStatus,
    LogLevel,
    StepError,
    StepStatus,
    utcnow,
)

logger = get_logger(__name__)


def _elapsed_ms(start: datetime | None, end: datetime) -> int | None:
    if start is None:
        return None
    return int((end - start).total_seconds() * 1000)


class ApprovalCoordinator:
    """
    Applies approve / reject / expire decisions.

    Args:
        store: Same store the engine writes to
        event_bus: Receives ``step:*`` and ``execution:failed`` events
        engine: Resumes executions after an approval

    Example:
        coordinator = ApprovalCoordinator(store, bus, engine)
        pending = coordinator.pending_for("alice")
        await coordinator.approve(pending[0].id, "alice", note="LGTM")
    """

    def __init__(self, store: RunbookStore, event_bus: EventBus, engine: ExecutionEngine) -> None:
        self._store = store
        self._event_bus = event_bus
        self._engine = engine

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, approval_id: str) -> Approval:
        approval = self._store.get_approval(approval_id)
        if approval is None:
            raise ApprovalNotFoundError(approval_id)
        return approval

    def pending_for(self, approver_id: str) -> list[Approval]:
        """PENDING approvals that still wait on ``approver_id``."""
        return [
            a
            for a in self._store.list_approvals(status=ApprovalStatus.PENDING)
            if approver_id in a.required_approvers and approver_id not in a.approved_by
        ]

    def list_for_execution(self, execution_id: str) -> list[Approval]:
        return self._store.list_approvals(execution_id=execution_id)

    # =========================================================================
    # Decisions
    # =========================================================================

    async def approve(
        self,
        approval_id: str,
        approver_id: str,
        note: str | None = None,
        *,
        wait: bool = True,
    ) -> Approval:
        """Approve a pending request and resume the execution.

        Args:
            wait: Await the resumed run (default) or resume in the background.

        Raises:
            ApprovalNotFoundError: Unknown approval
            ApprovalPermissionError: ``approver_id`` is not a required approver
            ApprovalAlreadyProcessedError: Approval is no longer PENDING
            ApprovalExpiredError: Approval expired (execution is failed)
            ExecutionStateError: Execution already finished
        """
        approval, execution = await self._validate(approval_id, approver_id)
        if approver_id in approval.approved_by:
            raise ApprovalError(
                f"{approver_id} has already approved this request", code="ALREADY_APPROVED"
            )

        now = utcnow()
        approved_by = [*approval.approved_by, approver_id]
        outstanding = set(approval.required_approvers) - set(approved_by)

        if approval.require_all and outstanding:
            if not self._store.transition_approval(
                approval.id, {ApprovalStatus.PENDING}, ApprovalStatus.PENDING, approved_by=approved_by
            ):
                raise ApprovalAlreadyProcessedError(self.get(approval.id).status.value)
            await self._log(
                execution,
                LogLevel.INFO,
                f"Approval recorded from {approver_id} ({len(approved_by)} of "
                f"{len(approval.required_approvers)})",
                step_index=approval.step_index,
                metadata={"approval_id": approval.id, "outstanding": sorted(outstanding)},
            )
            logger.info(
                "approvals.partial",
                approval_id=approval.id,
                approver=approver_id,
                outstanding=sorted(outstanding),
            )
            return self.get(approval.id)

        if not self._store.transition_approval(
            approval.id,
            {ApprovalStatus.PENDING},
            ApprovalStatus.APPROVED,
            approved_by=approved_by,
            responder=approver_id,
            responded_at=now,
            response_note=note,
        ):
            raise ApprovalAlreadyProcessedError(self.get(approval.id).status.value)

        self._store.update_step_results(
            execution.id,
            approval.step_index,
            StepStatus.PAUSED,
            status=StepStatus.SUCCESS,
            finished_at=now,
            duration_ms=_elapsed_ms(approval.requested_at, now),
            output={"approved": True, "approved_by": approver_id, "note": note},
        )
        await self._log(
            execution,
            LogLevel.INFO,
            f"Step approved by {approver_id}: {approval.step_name}",
            step_index=approval.step_index,
            metadata={"approval_id": approval.id, "note": note},
        )
        logger.info("approvals.approved", approval_id=approval.id, approver=approver_id)
        await self._publish(
            STEP_APPROVED,
            execution.id,
            {
                "approval_id": approval.id,
                "step_index": approval.step_index,
                "step_id": approval.step_id,
                "approved_by": approver_id,
                "note": note,
            },
        )

        next_index = approval.step_index + 1
        if wait:
            await self._engine.resume(execution.id, next_index)
        else:
            self._engine.start(execution.id, from_index=next_index)
        return self.get(approval.id)

    async def reject(self, approval_id: str, approver_id: str, reason: str) -> Approval:
        """Reject a pending request; the step and the execution fail.

        Raises:
            ApprovalError: ``reason`` is empty
            ApprovalNotFoundError / ApprovalPermissionError /
            ApprovalAlreadyProcessedError / ApprovalExpiredError /
            ExecutionStateError: As for :meth:`approve`
        """
        if not reason or not reason.strip():
            raise ApprovalError("Rejection reason is required", code="REASON_REQUIRED")

        approval, execution = await self._validate(approval_id, approver_id)
        now = utcnow()
        if not self._store.transition_approval(
            approval.id,
            {ApprovalStatus.PENDING},
            ApprovalStatus.REJECTED,
            responder=approver_id,
            responded_at=now,
            response_note=reason,
        ):
            raise ApprovalAlreadyProcessedError(self.get(approval.id).status.value)

        self._store.update_step_results(
            execution.id,
            approval.step_index,
            StepStatus.PAUSED,
            status=StepStatus.FAILED,
            finished_at=now,
            duration_ms=_elapsed_ms(approval.requested_at, now),
            output={"rejected": True, "rejected_by": approver_id, "reason": reason},
            error=StepError(
                message=f"Rejected by {approver_id}: {reason}",
                code="REJECTED",
                category=ErrorCategory.APPROVAL.value,
            ),
        )
        await self._publish(
            STEP_REJECTED,
            execution.id,
            {
                "approval_id": approval.id,
                "step_index": approval.step_index,
                "step_id": approval.step_id,
                "rejected_by": approver_id,
                "reason": reason,
            },
        )
        logger.info("approvals.rejected", approval_id=approval.id, approver=approver_id)
        await self._fail_execution(
            execution,
            approval,
            f"Step '{approval.step_name}' rejected by {approver_id}: {reason}",
        )
        return self.get(approval.id)

    async def expire(self, approval_id: str) -> Approval:
        """Expire one PENDING approval now, failing its step and execution."""
        approval = self.get(approval_id)
        if approval.status != ApprovalStatus.PENDING:
            raise ApprovalAlreadyProcessedError(approval.status.value)
        await self._expire(approval)
        return self.get(approval_id)

    async def sweep_expired(self, now: datetime | None = None) -> list[Approval]:
        """Expire every PENDING approval whose ``expires_at`` has passed."""
        now = now or utcnow()
        expired: list[Approval] = []
        for approval in self._store.list_approvals(status=ApprovalStatus.PENDING):
            if approval.is_expired(now) and await self._expire(approval, now):
                expired.append(self.get(approval.id))
        if expired:
            logger.info("approvals.sweep", expired=len(expired))
        return expired

    # =========================================================================
    # Internals
    # =========================================================================

    async def _validate(self, approval_id: str, approver_id: str) -> tuple[Approval, Execution]:
        approval = self.get(approval_id)
        if approver_id not in approval.required_approvers:
            raise ApprovalPermissionError(f"{approver_id} is not an approver of this step")
        if approval.status != ApprovalStatus.PENDING:
            raise ApprovalAlreadyProcessedError(approval.status.value)

        execution = self._store.get_execution(approval.execution_id)
        if execution is None or execution.is_terminal:
            status = execution.status.value if execution else "missing"
            raise ExecutionStateError(
                f"Execution {approval.execution_id} is {status}; approval can no longer be decided"
            )
        if approval.is_expired():
            await self._expire(approval)
            raise ApprovalExpiredError(approval.id)

        await self._engine.settle(execution.id)
        return approval, execution

    async def _expire(self, approval: Approval, now: datetime | None = None) -> bool:
        now = now or utcnow()
        await self._engine.settle(approval.execution_id)
        if not self._store.transition_approval(
            approval.id, {ApprovalStatus.PENDING}, ApprovalStatus.EXPIRED, responded_at=now
        ):
            return False

        execution = self._store.get_execution(approval.execution_id)
        if execution is None or execution.is_terminal:
            return True

        self._store.update_step_results(
            execution.id,
            approval.step_index,
            StepStatus.PAUSED,
            status=StepStatus.FAILED,
            finished_at=now,
            duration_ms=_elapsed_ms(approval.requested_at, now),
            output={"expired": True, "expires_at": approval.expires_at.isoformat() if approval.expires_at else None},
            error=StepError(
                message="Approval has expired",
                code="EXPIRED",
                category=ErrorCategory.APPROVAL.value,
            ),
        )
        await self._publish(
            STEP_EXPIRED,
            execution.id,
            {"approval_id": approval.id, "step_index": approval.step_index, "step_id": approval.step_id},
        )
        logger.info("approvals.expired", approval_id=approval.id)
        await self._fail_execution(
            execution, approval, f"Approval expired for step '{approval.step_name}'"
        )
        return True

    async def _fail_execution(self, execution: Execution, approval: Approval, message: str) -> None:
        now = utcnow()
        if not self._store.transition_execution(
            execution.id,
            {ExecutionStatus.RUNNING},
            ExecutionStatus.FAILED,
            finished_at=now,
            duration_ms=_elapsed_ms(execution.started_at, now),
            error_message=message,
            error_step=approval.step_index,
        ):
            return
        await self._log(
            execution, LogLevel.ERROR, f"Execution failed: {message}", step_index=approval.step_index
        )
        await self._publish(
            EXECUTION_FAILED,
            execution.id,
            {"error": message, "error_step": approval.step_index},
        )

    async def _log(
        self,
        execution: Execution,
        level: LogLevel,
        message: str,
        step_index: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        context = ExecutionContext(
            execution_id=execution.id,
            runbook_id=execution.runbook_id,
            store=self._store,
            event_bus=self._event_bus,
            environment=execution.environment,
        )
        await context.log(level, message, metadata=metadata, step_index=step_index)

    async def _publish(self, event_type: str, execution_id: str, payload: dict[str, Any]) -> None:
        await self._event_bus.publish(
            ExecutionEvent(event_type, execution_id=execution_id, payload=payload)
        )


__all__ = ["ApprovalCoordinator"]
