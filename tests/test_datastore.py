#!/usr/bin/env python3
"""
Transaction boundaries and constraint mapping against the SQLite datastore
"""
import unittest
from unittest.mock import patch

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from common.error_handling import ConflictError, NotFoundError, TransactionError
from allocation_service.models import Allocation, _integrity_failure, flush_allocations

from support import ACTOR, MAIN_REQUEST, AllocationTestCase, money, new_allocation


def disk_failure():
    return OperationalError("INSERT INTO payout_request_allocations", {}, Exception("disk I/O error"))


class TestTransactionRollback(AllocationTestCase):
    """A failure after rows were flushed leaves the database untouched"""

    def setUp(self):
        super().setUp()
        self.existing = self.services.store.create(MAIN_REQUEST, new_allocation(5, "100.00"), ACTOR)

    def allocation_count(self):
        with self.datastore.session() as session:
            return session.execute(select(func.count(Allocation.id))).scalar()

    def test_bulk_failure_after_flush_rolls_back_everything(self):
        """Rows updated and inserted by a failed batch are all rolled back"""
        def flush_then_fail(session, allocations):
            flush_allocations(session, allocations)
            raise RuntimeError("worker lost")

        with patch("allocation_service.reconciler.flush_allocations", side_effect=flush_then_fail):
            with self.assertRaises(RuntimeError):
                self.services.reconciler.reconcile(
                    MAIN_REQUEST, [new_allocation(5, "200.00"), new_allocation(7, "300.00")], ACTOR
                )

        self.assertEqual(self.allocation_count(), 1)
        self.assertEqual(self.services.store.get(self.existing.id).allocated_amount, money("100.00"))

    def test_database_error_becomes_transaction_error(self):
        """SQLAlchemy errors surface as TransactionError and nothing is kept"""
        def flush_then_break(session, allocations):
            flush_allocations(session, allocations)
            raise disk_failure()

        with patch("allocation_service.reconciler.flush_allocations", side_effect=flush_then_break):
            with self.assertRaises(TransactionError) as ctx:
                self.services.reconciler.reconcile(MAIN_REQUEST, [new_allocation(7, "300.00")], ACTOR)

        self.assertEqual(ctx.exception.code, "DATABASE_ERROR")
        self.assertIsInstance(ctx.exception.original_error, OperationalError)
        self.assertNotIn("disk I/O", ctx.exception.message)
        self.assertEqual(self.allocation_count(), 1)


class TestConstraintMapping(AllocationTestCase):
    """Constraint failures on flush map to the matching domain error"""

    def test_unique_key_collision_is_a_conflict(self):
        """A duplicate key that slips past the lookup is still reported as a conflict"""
        self.services.store.create(MAIN_REQUEST, new_allocation(5, "100.00"), ACTOR)

        with self.assertRaises(ConflictError):
            with self.datastore.transaction() as session:
                duplicate = Allocation(
                    payout_request_id=MAIN_REQUEST, user_id=5, flow_id=None,
                    allocated_amount=money("1.00"), currency="USD", status="draft",
                )
                session.add(duplicate)
                flush_allocations(session, [duplicate])

    def test_unknown_user_is_not_found(self):
        """An allocation for a user that does not exist is rejected as not found"""
        with self.assertRaises(NotFoundError):
            self.services.store.create(MAIN_REQUEST, new_allocation(4242, "1.00"), ACTOR)
        self.assertEqual(self.services.store.list_by_payout_request(MAIN_REQUEST), [])

    def test_unknown_flow_is_not_found(self):
        """Moving an allocation onto a missing flow is rejected as not found"""
        with self.assertRaises(NotFoundError):
            self.services.store.create(MAIN_REQUEST, new_allocation(5, "1.00", flow_id=99), ACTOR)

        record = self.services.store.create(MAIN_REQUEST, new_allocation(5, "1.00"), ACTOR)
        with self.assertRaises(NotFoundError):
            self.services.reconciler.reconcile(MAIN_REQUEST, [new_allocation(5, "2.00", flow_id=99)], ACTOR)
        self.assertIsNone(self.services.store.get(record.id).flow_id)

    def test_other_constraint_failures_are_transaction_errors(self):
        """Constraint failures unrelated to keys or references are not disguised"""
        with self.assertRaises(TransactionError):
            with self.datastore.transaction() as session:
                broken = Allocation(
                    payout_request_id=MAIN_REQUEST, user_id=5, flow_id=None,
                    allocated_amount=None, currency="USD", status="draft",
                )
                session.add(broken)
                flush_allocations(session, [broken])

    def test_mysql_messages(self):
        """MySQL duplicate-key and foreign-key messages are recognized"""
        duplicate = IntegrityError("INSERT", {}, Exception(
            "(1062, \"Duplicate entry '1-5-0' for key 'payout_request_allocations.uq_allocation_key'\")"
        ))
        self.assertIsInstance(_integrity_failure(duplicate), ConflictError)

        missing_flow = IntegrityError("INSERT", {}, Exception(
            "(1452, 'Cannot add or update a child row: a foreign key constraint fails "
            "(`operations`.`payout_request_allocations`, CONSTRAINT `payout_request_allocations_ibfk_3` "
            "FOREIGN KEY (`flow_id`) REFERENCES `flows` (`id`))')"
        ))
        mapped = _integrity_failure(missing_flow)
        self.assertIsInstance(mapped, NotFoundError)
        self.assertEqual(mapped.field, "flow_id")

        not_null = IntegrityError("INSERT", {}, Exception("(1048, \"Column 'allocated_amount' cannot be null\")"))
        self.assertIsNone(_integrity_failure(not_null))


class TestAllocationIds(AllocationTestCase):

    def test_ids_are_not_reused_after_delete(self):
        """Deleting the newest allocation never hands its id to the next one"""
        old = self.services.store.create(MAIN_REQUEST, new_allocation(5, "10.00"), ACTOR)
        self.services.store.delete(old.id)

        new = self.services.store.create(MAIN_REQUEST, new_allocation(7, "10.00"), ACTOR)
        self.assertGreater(new.id, old.id)
        with self.assertRaises(NotFoundError):
            self.services.store.get(old.id)


if __name__ == "__main__":
    unittest.main()
