"""
Bulk reconciliation: apply a desired set of allocations to a payout request
as one all-or-nothing transaction (update matching rows, insert the rest).
Rows missing from the desired set are left alone.
"""
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Tuple

import pydantic
from sqlalchemy import select

from common.error_handling import ValidationError, require_id
from common.schemas import AllocationCreate, AllocationRecord, AllocationStatus
from allocation_service.db import DataStore
from allocation_service.directory import PayoutRequestStore
from allocation_service.guard import ConservationGuard
from allocation_service.models import Allocation, flow_key_for, flush_allocations

logger = logging.getLogger(__name__)

Key = Tuple[int, int]


def _coerce_items(desired_items: Iterable) -> List[AllocationCreate]:
    items = []
    for position, item in enumerate(desired_items, start=1):
        if isinstance(item, AllocationCreate):
            items.append(item)
            continue
        try:
            items.append(AllocationCreate.model_validate(item))
        except pydantic.ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(loc) for loc in first.get("loc", []))
            raise ValidationError(
                f"Allocation {position}: {field} {first.get('msg', 'is invalid')}",
                field=field,
                context={"position": position},
            ) from e
    if not items:
        raise ValidationError("Allocations must be a non-empty list", field="allocations")
    return items


def _check_unique_keys(items: List[AllocationCreate]) -> None:
    seen: Dict[Key, int] = {}
    for position, item in enumerate(items, start=1):
        key = (item.user_id, flow_key_for(item.flow_id))
        if key in seen:
            raise ValidationError(
                f"Allocation {position}: user {item.user_id} appears more than once for the same flow "
                f"(first at position {seen[key]})",
                field="allocations",
                context={"position": position, "duplicate_of": seen[key]},
            )
        seen[key] = position


class BulkReconciler:

    def __init__(self, datastore: DataStore, guard: ConservationGuard, payout_requests: PayoutRequestStore):
        self.datastore = datastore
        self.guard = guard
        self.payout_requests = payout_requests

    def reconcile(self, payout_request_id: int, desired_items, actor: int) -> List[AllocationRecord]:
        """Upsert desired_items for the payout request; returns records in input order."""
        require_id(payout_request_id, "payout_request_id")
        require_id(actor, "actor")
        items = _coerce_items(desired_items)
        _check_unique_keys(items)

        # The batch on its own must fit the total; rejected before anything is locked
        payout_request_info = self.payout_requests.require(payout_request_id)
        self.guard.precheck(payout_request_id, payout_request_info.total_amount, (i.allocated_amount for i in items))

        with self.datastore.transaction() as session:
            payout_request = self.guard.lock_payout_request(session, payout_request_id)

            candidates = session.execute(
                select(Allocation)
                .where(Allocation.payout_request_id == payout_request_id)
                .where(Allocation.user_id.in_({item.user_id for item in items}))
                .with_for_update()
            ).scalars().all()
            existing: Dict[Key, Allocation] = {(a.user_id, a.flow_key): a for a in candidates}

            matched = []
            delta = Decimal("0")
            for item in items:
                row = existing.get((item.user_id, flow_key_for(item.flow_id)))
                matched.append(row)
                # Cancelled rows keep their status, so their new amount stays outside the budget
                if row is None or row.status != AllocationStatus.CANCELLED.value:
                    delta += item.allocated_amount

            self.guard.check_within_budget(
                session, payout_request, delta,
                excluding=[row.id for row in matched if row is not None],
            )

            results = []
            for item, row in zip(items, matched):
                if row is not None:
                    row.allocated_amount = item.allocated_amount
                    row.percentage = item.percentage
                    row.description = item.description
                    row.notes = item.notes
                    row.updated_by = actor
                else:
                    row = Allocation(
                        payout_request_id=payout_request_id,
                        user_id=item.user_id,
                        flow_id=item.flow_id,
                        allocated_amount=item.allocated_amount,
                        percentage=item.percentage,
                        currency=payout_request.currency,
                        status=AllocationStatus.DRAFT.value,
                        description=item.description,
                        notes=item.notes,
                        created_by=actor,
                        updated_by=actor,
                    )
                    session.add(row)
                results.append(row)

            records = flush_allocations(session, results)
            created = sum(1 for row in matched if row is None)

        logger.info(
            f"Reconciled {len(records)} allocations on payout request {payout_request_id} "
            f"({created} created, {len(records) - created} updated) by user {actor}"
        )
        return records
