import logging
from typing import Dict, FrozenSet

from sqlalchemy import func, update

from common.error_handling import NotFoundError, ValidationError, require_id
from common.schemas import AllocationRecord, AllocationStatus
from allocation_service.db import DataStore
from allocation_service.guard import ConservationGuard
from allocation_service.models import Allocation

logger = logging.getLogger(__name__)

DRAFT = AllocationStatus.DRAFT
CONFIRMED = AllocationStatus.CONFIRMED
PAID = AllocationStatus.PAID
CANCELLED = AllocationStatus.CANCELLED

# paid is terminal; cancelled rows can only be reinstated as drafts
TRANSITIONS: Dict[AllocationStatus, FrozenSet[AllocationStatus]] = {
    DRAFT: frozenset({CONFIRMED, CANCELLED}),
    CONFIRMED: frozenset({PAID, CANCELLED}),
    CANCELLED: frozenset({DRAFT}),
    PAID: frozenset(),
}


def check_transition(current, target) -> None:
    current, target = AllocationStatus(current), AllocationStatus(target)
    if current == target or target in TRANSITIONS[current]:
        return
    raise ValidationError(
        f"Allocation cannot move from '{current.value}' to '{target.value}'",
        field="status",
        context={"current": current.value, "target": target.value},
    )


class LifecycleManager:
    """Status transitions for allocations of one payout request."""

    def __init__(self, datastore: DataStore, guard: ConservationGuard):
        self.datastore = datastore
        self.guard = guard

    def confirm_all(self, payout_request_id: int, actor: int) -> int:
        """Move every draft allocation of the request to confirmed; returns how many moved."""
        require_id(payout_request_id, "payout_request_id")
        require_id(actor, "actor")
        with self.datastore.transaction() as session:
            self.guard.lock_payout_request(session, payout_request_id)
            result = session.execute(
                update(Allocation)
                .where(Allocation.payout_request_id == payout_request_id)
                .where(Allocation.status == DRAFT.value)
                .values(status=CONFIRMED.value, updated_by=actor, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            confirmed_count = result.rowcount or 0

        logger.info(f"Confirmed {confirmed_count} allocations for payout request {payout_request_id} by user {actor}")
        return confirmed_count

    def cancel(self, allocation_id: int, actor: int) -> AllocationRecord:
        require_id(allocation_id, "allocation_id")
        require_id(actor, "actor")
        with self.datastore.transaction() as session:
            allocation = session.get(Allocation, allocation_id, with_for_update=True)
            if allocation is None:
                raise NotFoundError(f"Allocation {allocation_id} not found", field="allocation_id")
            check_transition(allocation.status, CANCELLED)
            allocation.status = CANCELLED.value
            allocation.updated_by = actor
            session.flush()
            session.refresh(allocation)
            record = AllocationRecord.model_validate(allocation)

        logger.info(f"Allocation {allocation_id} cancelled by user {actor}")
        return record
