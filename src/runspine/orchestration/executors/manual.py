"""MANUAL step executor.

Creates the approval request and pauses.  The engine persists the PAUSED
row and returns; the run continues when
:class:`~runspine.orchestration.approvals.ApprovalCoordinator` approves
(resume at the next index) or ends when it rejects.
"""

from __future__ import annotations

from datetime import timedelta

from runspine.core.errors import ConfigurationError
from runspine.core.logging import get_logger
from runspine.core.store import RunbookStore
from runspine.orchestration.context import ExecutionContext
from runspine.orchestration.models import Approval, utcnow
from runspine.orchestration.step_result import StepResult
from runspine.orchestration.step_types import ManualStep

logger = get_logger(__name__)


class ManualExecutor:
    def __init__(self, store: RunbookStore) -> None:
        self._store = store

    async def execute(self, step: ManualStep, context: ExecutionContext) -> StepResult:
        config = step.config
        if step.id not in context.step_indices:
            raise ConfigurationError(f"MANUAL step '{step.id}' has no step index")

        now = utcnow()
        expires_at = (
            now + timedelta(seconds=config.expires_after) if config.expires_after else None
        )
        approval = self._store.create_approval(
            Approval(
                execution_id=context.execution_id,
                step_index=context.step_indices[step.id],
                step_id=step.id,
                step_name=step.name,
                required_approvers=list(config.approvers),
                require_all=config.require_all_approvers,
                requested_at=now,
                expires_at=expires_at,
                request_note=config.instructions or None,
            )
        )
        logger.info(
            "executor.manual.approval_requested",
            execution_id=context.execution_id,
            approval_id=approval.id,
            approvers=list(config.approvers),
        )
        return StepResult.pause(
            {
                "approval_id": approval.id,
                "approvers": list(config.approvers),
                "instructions": config.instructions,
                "expires_at": expires_at.isoformat() if expires_at else None,
            }
        )
