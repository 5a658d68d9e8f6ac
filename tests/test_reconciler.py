#!/usr/bin/env python3
"""
Bulk reconciliation tests
"""
import unittest

from common.error_handling import ConservationViolation, NotFoundError, ValidationError
from common.schemas import AllocationStatus

from support import ACTOR, MAIN_REQUEST, MISSING_REQUEST, AllocationTestCase, money, new_allocation


class TestBulkReconciler(AllocationTestCase):

    def reconcile(self, items, payout_request_id=MAIN_REQUEST, actor=ACTOR):
        return self.services.reconciler.reconcile(payout_request_id, items, actor)

    def amounts(self):
        return {
            (a.user_id, a.flow_id): a.allocated_amount
            for a in self.services.store.list_by_payout_request(MAIN_REQUEST)
        }

    def test_inserts_then_updates_in_place(self):
        """Test that a second batch updates the rows created by the first"""
        created = self.reconcile([new_allocation(10, "300.00"), new_allocation(11, "300.00", flow_id=2)])
        self.assertEqual([r.user_id for r in created], [10, 11])
        self.assertTrue(all(r.status == AllocationStatus.DRAFT for r in created))

        updated = self.reconcile(
            [new_allocation(11, "250.00", flow_id=2, notes="adjusted"), new_allocation(10, "350.00")], actor=7
        )
        self.assertEqual([r.id for r in updated], [created[1].id, created[0].id])
        self.assertEqual(updated[0].notes, "adjusted")
        self.assertEqual(updated[0].updated_by, 7)
        self.assertEqual(updated[0].created_by, ACTOR)
        self.assertEqual(self.amounts(), {(10, None): money("350.00"), (11, 2): money("250.00")})

    def test_accepts_plain_dicts(self):
        """Test that batch items may be plain dicts"""
        records = self.reconcile([{"user_id": 5, "allocated_amount": "12.34", "percentage": "1.5"}])
        self.assertEqual(records[0].allocated_amount, money("12.34"))
        self.assertEqual(records[0].percentage, money("1.50"))

    def test_rows_outside_the_batch_are_kept(self):
        """Test that rows missing from the batch are not deleted"""
        kept = self.services.store.create(MAIN_REQUEST, new_allocation(5, "100.00"), ACTOR)
        self.reconcile([new_allocation(7, "100.00")])
        self.assertEqual(self.services.store.get(kept.id).allocated_amount, money("100.00"))

    def test_overrun_against_stored_rows_writes_nothing(self):
        """Test that a batch overrunning stored rows writes nothing"""
        self.services.store.create(MAIN_REQUEST, new_allocation(5, "600.00"), ACTOR)

        with self.assertRaises(ConservationViolation) as ctx:
            self.reconcile([new_allocation(7, "300.00"), new_allocation(10, "200.00")])

        self.assertEqual(ctx.exception.overrun, money("100.00"))
        self.assertEqual(self.amounts(), {(5, None): money("600.00")})

    def test_replacing_amounts_uses_new_values_only(self):
        """Test that matched rows count with their new amounts"""
        self.reconcile([new_allocation(5, "600.00"), new_allocation(7, "400.00")])
        self.reconcile([new_allocation(5, "400.00"), new_allocation(7, "600.00")])
        self.assertEqual(self.amounts(), {(5, None): money("400.00"), (7, None): money("600.00")})

    def test_batch_larger_than_total_is_rejected_up_front(self):
        """Test that an oversized batch is rejected before writing"""
        with self.assertRaises(ConservationViolation) as ctx:
            self.reconcile([new_allocation(5, "600.00"), new_allocation(7, "400.01")])
        self.assertEqual(ctx.exception.overrun, money("0.01"))
        self.assertEqual(self.amounts(), {})

    def test_cancelled_match_keeps_status_and_budget(self):
        """Test that a matched cancelled row stays cancelled and off budget"""
        record = self.services.store.create(MAIN_REQUEST, new_allocation(5, "500.00"), ACTOR)
        self.services.lifecycle.cancel(record.id, ACTOR)
        self.services.store.create(MAIN_REQUEST, new_allocation(7, "800.00"), ACTOR)

        [updated] = self.reconcile([new_allocation(5, "900.00")])
        self.assertEqual(updated.id, record.id)
        self.assertEqual(updated.status, AllocationStatus.CANCELLED)
        self.assertEqual(updated.allocated_amount, money("900.00"))

    def test_empty_batch(self):
        """Test that an empty batch is rejected"""
        with self.assertRaises(ValidationError):
            self.reconcile([])

    def test_duplicate_keys_in_batch(self):
        """Test that a repeated user and flow in one batch is rejected"""
        with self.assertRaises(ValidationError) as ctx:
            self.reconcile([new_allocation(5, "1.00", flow_id=1), new_allocation(7, "1.00"), new_allocation(5, "2.00", flow_id=1)])
        self.assertEqual(ctx.exception.context["position"], 3)

        records = self.reconcile([new_allocation(5, "1.00", flow_id=1), new_allocation(5, "2.00")])
        self.assertEqual(len(records), 2)

    def test_invalid_item_names_its_position(self):
        """Test that an invalid item is reported with its position"""
        with self.assertRaises(ValidationError) as ctx:
            self.reconcile([{"user_id": 5, "allocated_amount": "10.00"}, {"user_id": 7, "allocated_amount": "-1"}])
        self.assertTrue(ctx.exception.message.startswith("Allocation 2:"))
        self.assertEqual(self.amounts(), {})

    def test_unknown_payout_request(self):
        """Test that a batch for a missing request is reported as not found"""
        with self.assertRaises(NotFoundError):
            self.reconcile([new_allocation(5, "1.00")], payout_request_id=MISSING_REQUEST)


if __name__ == "__main__":
    unittest.main()
