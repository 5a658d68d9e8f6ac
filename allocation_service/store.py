"""
Allocation persistence. Every write runs in one DataStore transaction that
first takes the payout request budget lock, then checks conservation, then
writes.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import aliased

from common.error_handling import ConflictError, NotFoundError, require_id
from common.schemas import (
    AllocationCreate, AllocationRecord, AllocationStatus, AllocationUpdate,
    AllocationView, UserPeriodAllocation, UserPeriodAllocations,
)
from allocation_service.db import DataStore
from allocation_service.directory import full_name
from allocation_service.filters import build_conditions
from allocation_service.guard import ConservationGuard
from allocation_service.lifecycle import check_transition
from allocation_service.models import (
    Allocation, Flow, PayoutRequest, User, flow_key_for, flush_allocations, to_money,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("allocated_amount", "percentage", "flow_id", "description", "notes", "status")


class AllocationStore:

    def __init__(self, datastore: DataStore, guard: ConservationGuard, reconciler=None):
        self.datastore = datastore
        self.guard = guard
        self.reconciler = reconciler

    def list_by_payout_request(self, payout_request_id: int) -> List[AllocationView]:
        """All allocations of a payout request, newest first, with display fields."""
        require_id(payout_request_id, "payout_request_id")
        creator = aliased(User)
        updater = aliased(User)
        query = (
            select(
                Allocation,
                User.username, User.first_name, User.last_name, User.telegram_id,
                Flow.name, Flow.status,
                creator.username, updater.username,
            )
            .outerjoin(User, Allocation.user_id == User.id)
            .outerjoin(Flow, Allocation.flow_id == Flow.id)
            .outerjoin(creator, Allocation.created_by == creator.id)
            .outerjoin(updater, Allocation.updated_by == updater.id)
            .where(Allocation.payout_request_id == payout_request_id)
            .order_by(Allocation.created_at.desc(), Allocation.id.desc())
        )
        with self.datastore.session() as session:
            rows = session.execute(query).all()
            return [
                AllocationView(
                    **allocation.to_record().model_dump(),
                    username=username,
                    user_full_name=full_name(first_name, last_name),
                    telegram_id=telegram_id,
                    flow_name=flow_name,
                    flow_status=flow_status,
                    created_by_username=created_by_username,
                    updated_by_username=updated_by_username,
                )
                for (allocation, username, first_name, last_name, telegram_id,
                     flow_name, flow_status, created_by_username, updated_by_username) in rows
            ]

    def get(self, allocation_id: int) -> AllocationRecord:
        require_id(allocation_id, "allocation_id")
        with self.datastore.session() as session:
            allocation = session.get(Allocation, allocation_id)
            if allocation is None:
                raise NotFoundError(f"Allocation {allocation_id} not found", field="allocation_id")
            return allocation.to_record()

    def _find_by_key(self, session, payout_request_id: int, user_id: int, flow_id: Optional[int]) -> Optional[Allocation]:
        return session.execute(
            select(Allocation)
            .where(Allocation.payout_request_id == payout_request_id)
            .where(Allocation.user_id == user_id)
            .where(Allocation.flow_key == flow_key_for(flow_id))
        ).scalar_one_or_none()

    def create(self, payout_request_id: int, data: AllocationCreate, actor: int) -> AllocationRecord:
        require_id(payout_request_id, "payout_request_id")
        require_id(actor, "actor")

        with self.datastore.transaction() as session:
            payout_request = self.guard.lock_payout_request(session, payout_request_id)
            existing = self._find_by_key(session, payout_request_id, data.user_id, data.flow_id)
            if existing is not None:
                raise ConflictError(
                    f"Allocation for user {data.user_id} already exists on payout request {payout_request_id}; "
                    f"update it or use the bulk endpoint",
                    context={"allocation_id": existing.id},
                )
            self.guard.check_within_budget(session, payout_request, data.allocated_amount)

            allocation = Allocation(
                payout_request_id=payout_request_id,
                user_id=data.user_id,
                flow_id=data.flow_id,
                allocated_amount=data.allocated_amount,
                percentage=data.percentage,
                currency=payout_request.currency,
                status=AllocationStatus.DRAFT.value,
                description=data.description,
                notes=data.notes,
                created_by=actor,
                updated_by=actor,
            )
            session.add(allocation)
            [record] = flush_allocations(session, [allocation])

        logger.info(
            f"Allocation {record.id} created: {record.allocated_amount} {record.currency} "
            f"to user {record.user_id} on payout request {payout_request_id}"
        )
        return record

    def update(self, allocation_id: int, patch: AllocationUpdate, actor: int) -> AllocationRecord:
        require_id(allocation_id, "allocation_id")
        require_id(actor, "actor")
        changes: Dict[str, Any] = {
            field: value
            for field, value in patch.model_dump(exclude_unset=True).items()
            if field in UPDATABLE_FIELDS and value is not None
        }

        with self.datastore.transaction() as session:
            allocation = session.get(Allocation, allocation_id)
            if allocation is None:
                raise NotFoundError(f"Allocation {allocation_id} not found", field="allocation_id")
            # Budget lock first, then re-read the row under it
            payout_request = self.guard.lock_payout_request(session, allocation.payout_request_id)
            allocation = session.get(Allocation, allocation_id, populate_existing=True)
            if allocation is None:
                raise NotFoundError(f"Allocation {allocation_id} not found", field="allocation_id")

            if "status" in changes:
                changes["status"] = AllocationStatus(changes["status"]).value
                check_transition(allocation.status, changes["status"])

            if "flow_id" in changes and flow_key_for(changes["flow_id"]) != allocation.flow_key:
                clash = self._find_by_key(session, allocation.payout_request_id, allocation.user_id, changes["flow_id"])
                if clash is not None:
                    raise ConflictError(
                        f"User {allocation.user_id} already has an allocation for flow {changes['flow_id']}",
                        field="flow_id",
                        context={"allocation_id": clash.id},
                    )

            new_status = changes.get("status", allocation.status)
            new_amount = changes.get("allocated_amount", allocation.allocated_amount)
            if new_status != AllocationStatus.CANCELLED.value:
                self.guard.check_within_budget(session, payout_request, Decimal(new_amount), excluding=[allocation.id])

            for field, value in changes.items():
                setattr(allocation, field, value)
            allocation.updated_by = actor
            [record] = flush_allocations(session, [allocation])

        logger.info(f"Allocation {allocation_id} updated by user {actor}: {sorted(changes)}")
        return record

    def delete(self, allocation_id: int) -> bool:
        require_id(allocation_id, "allocation_id")
        with self.datastore.transaction() as session:
            allocation = session.get(Allocation, allocation_id)
            if allocation is None:
                return False
            session.delete(allocation)

        logger.info(f"Allocation {allocation_id} deleted")
        return True

    def bulk_upsert(self, payout_request_id: int, items, actor: int) -> List[AllocationRecord]:
        return self.reconciler.reconcile(payout_request_id, items, actor)

    def list_for_user(self, user_id: int, filters: Optional[Mapping[str, Any]] = None) -> UserPeriodAllocations:
        """A user's allocations across payout requests, narrowed by the recognized filters."""
        require_id(user_id, "user_id")
        conditions = build_conditions(filters or {})
        query = (
            select(Allocation, PayoutRequest.status, PayoutRequest.period_start, PayoutRequest.period_end)
            .join(PayoutRequest, Allocation.payout_request_id == PayoutRequest.id)
            .where(Allocation.user_id == user_id)
            .order_by(Allocation.created_at.desc(), Allocation.id.desc())
        )
        if conditions:
            query = query.where(*conditions)
        with self.datastore.session() as session:
            rows = session.execute(query).all()
            allocations = [
                UserPeriodAllocation(
                    **allocation.to_record().model_dump(),
                    payout_request_status=request_status,
                    period_start=period_start,
                    period_end=period_end,
                )
                for allocation, request_status, period_start, period_end in rows
            ]

        total = sum((to_money(a.allocated_amount) for a in allocations), Decimal("0.00"))
        return UserPeriodAllocations(user_id=user_id, allocations=allocations, total_allocated=total)
