"""FIFO planner: pure planning over ledger lots, plus the DB-backed entry points."""

import pytest

from fishplant.errors import ConcurrencyConflictError, ValidationError
from fishplant.services.allocation import (
    BY_PIECES,
    apply_plan,
    fifo_allocate,
    get_oldest_batches,
    plan_allocation,
    plan_pooled_allocation,
)
from fishplant.services.ledger import ORDER_OUT, LedgerLot, SortedSizeInput, create_sorting_batch, post_movement
from tests.factories import make_location, make_stock, ts


def _lot(entry_id, weight_kg, created_at, *, pieces=None, size_class=4, location_id=1):
    return LedgerLot(
        entry_id=entry_id,
        batch_id=entry_id,
        batch_number=f"SB-20240301-{entry_id:04d}",
        size_class=size_class,
        storage_location_id=location_id,
        storage_location_name="Cold A",
        pieces=pieces if pieces is not None else int(weight_kg * 2),
        weight_kg=weight_kg,
        created_at=created_at,
    )


class TestFifoOrdering:

    def test_takes_oldest_first_and_stops_when_satisfied(self):
        lots = [_lot(3, 20.0, ts(2)), _lot(1, 5.0, ts(0)), _lot(2, 10.0, ts(1))]
        plan = fifo_allocate(lots, 12)

        assert [(l.entry_id, l.weight_taken_kg) for l in plan.lines] == [(1, 5.0), (2, 7.0)]
        assert plan.shortfall == 0
        assert plan.is_satisfied

    def test_equal_timestamps_break_ties_by_entry_sequence(self):
        # 9 before 10 numerically; a string sort would put "10" first.
        lots = [_lot(10, 5.0, ts(0)), _lot(9, 5.0, ts(0))]
        plan = fifo_allocate(lots, 6)

        assert [l.entry_id for l in plan.lines] == [9, 10]
        assert plan.lines[0].weight_taken_kg == 5.0
        assert plan.lines[1].weight_taken_kg == pytest.approx(1.0)

    def test_timestamps_compared_as_instants(self):
        earlier_with_offset = "2024-03-01T08:00:00+03:00"  # 05:00 UTC
        lots = [_lot(1, 5.0, ts(0)), _lot(2, 5.0, earlier_with_offset)]
        plan = fifo_allocate(lots, 5)

        assert [l.entry_id for l in plan.lines] == [2]


class TestNoOverAllocation:

    def test_never_takes_more_than_required(self):
        lots = [_lot(1, 30.0, ts(0)), _lot(2, 20.0, ts(1))]
        plan = fifo_allocate(lots, 40)

        assert plan.total_weight_kg == pytest.approx(40.0)
        assert plan.total_weight_kg <= 40.0

    def test_shortfall_is_requirement_minus_available(self):
        plan = fifo_allocate([_lot(1, 5.0, ts(0)), _lot(2, 3.0, ts(1))], 12)

        assert plan.total_weight_kg == pytest.approx(8.0)
        assert plan.shortfall == pytest.approx(4.0)
        assert not plan.is_satisfied

    def test_no_lots_is_full_shortfall_not_an_error(self):
        plan = fifo_allocate([], 7.5)

        assert plan.lines == []
        assert plan.shortfall == pytest.approx(7.5)

    def test_zero_requirement_plans_nothing(self):
        plan = fifo_allocate([_lot(1, 5.0, ts(0))], 0)

        assert plan.lines == []
        assert plan.is_satisfied


class TestPieceAccounting:

    def test_whole_lot_take_carries_all_pieces(self):
        plan = fifo_allocate([_lot(1, 5.0, ts(0), pieces=12)], 5.0)

        assert plan.lines[0].quantity_taken == 12

    def test_partial_weight_take_leaves_at_least_one_piece(self):
        plan = fifo_allocate([_lot(1, 10.0, ts(0), pieces=4)], 9.9)

        assert plan.lines[0].quantity_taken == 3

    def test_partial_weight_take_moves_at_least_one_piece(self):
        plan = fifo_allocate([_lot(1, 10.0, ts(0), pieces=4)], 0.1)

        assert plan.lines[0].quantity_taken == 1

    def test_pieces_mode_prorates_weight(self):
        lots = [_lot(1, 10.0, ts(0), pieces=20), _lot(2, 10.0, ts(1), pieces=10)]
        plan = fifo_allocate(lots, 25, by=BY_PIECES)

        assert [(l.quantity_taken, l.weight_taken_kg) for l in plan.lines] == [(20, 10.0), (5, 5.0)]
        assert plan.allocated == 25
        assert plan.shortfall == 0

    def test_pieces_mode_requires_whole_numbers(self):
        with pytest.raises(ValidationError):
            fifo_allocate([], 2.5, by=BY_PIECES)


class TestValidation:

    def test_negative_requirement_rejected(self):
        with pytest.raises(ValidationError):
            fifo_allocate([], -1)

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValidationError):
            fifo_allocate([], 1, by="boxes")

    def test_unknown_size_class_rejected(self, conn):
        with pytest.raises(ValidationError):
            plan_allocation(conn, 11, 5)


class TestPlanAllocation:

    def test_plans_across_locations_oldest_first(self, conn):
        a = make_location(conn, "Cold A")
        b = make_location(conn, "Cold B")
        newer = make_stock(conn, a, 4, 10.0, created_at=ts(5))
        older = make_stock(conn, b, 4, 10.0, created_at=ts(1))

        plan = plan_allocation(conn, 4, 15)

        assert [l.entry_id for l in plan.lines] == [older, newer]
        assert [l.storage_location_name for l in plan.lines] == ["Cold B", "Cold A"]

    def test_restricts_to_one_location(self, conn):
        a = make_location(conn, "Cold A")
        b = make_location(conn, "Cold B")
        make_stock(conn, a, 4, 10.0, created_at=ts(5))
        make_stock(conn, b, 4, 10.0, created_at=ts(1))

        plan = plan_allocation(conn, 4, 15, storage_location_id=a)

        assert plan.available == pytest.approx(10.0)
        assert plan.shortfall == pytest.approx(5.0)

    def test_ignores_batches_that_are_not_completed(self, conn):
        a = make_location(conn)
        create_sorting_batch(conn, storage_location_id=a, lines=[SortedSizeInput(4, 10, 5.0)], created_at=ts(0))

        plan = plan_allocation(conn, 4, 5)

        assert plan.lines == []
        assert plan.shortfall == pytest.approx(5.0)

    def test_pooled_plan_spans_sizes_in_age_order(self, conn):
        a = make_location(conn)
        size_six = make_stock(conn, a, 6, 10.0, created_at=ts(0))
        size_four = make_stock(conn, a, 4, 10.0, created_at=ts(1))
        make_stock(conn, a, 8, 10.0, created_at=ts(-5))

        plan = plan_pooled_allocation(conn, [4, 6], 15)

        assert [l.entry_id for l in plan.lines] == [size_six, size_four]
        assert plan.weight_by_size() == {4: 5.0, 6: 10.0}

    def test_pooled_plan_with_no_sizes_means_any_size(self, conn):
        a = make_location(conn)
        make_stock(conn, a, 8, 10.0, created_at=ts(0))

        plan = plan_pooled_allocation(conn, [], 4)

        assert plan.weight_by_size() == {8: 4.0}


class TestApplyPlan:

    def test_rejects_plan_overtaken_by_another_deduction(self, conn):
        a = make_location(conn)
        entry = make_stock(conn, a, 4, 10.0, created_at=ts(0))
        plan = plan_allocation(conn, 4, 8)

        post_movement(
            conn, entry_id=entry, movement_type=ORDER_OUT, pieces_delta=-5,
            weight_kg_delta=-5.0, reference_type="outlet_order", reference_id=99,
        )

        with pytest.raises(ConcurrencyConflictError):
            apply_plan(conn, plan, movement_type=ORDER_OUT, reference_type="outlet_order", reference_id=1)


class TestOldestBatches:

    def test_lists_batches_oldest_first_with_age(self, conn):
        a = make_location(conn)
        make_stock(conn, a, 4, 5.0, created_at=ts(10))
        make_stock(conn, a, 4, 6.0, created_at=ts(0))
        make_stock(conn, a, 5, 7.0, created_at=ts(5))

        oldest = get_oldest_batches(conn, limit=2)

        assert [(b.size_class, b.weight_kg) for b in oldest] == [(4, 6.0), (5, 7.0)]
        assert all(b.days_in_storage >= 0 for b in oldest)
        assert oldest[0].storage_location_names == ("Cold A",)

    def test_filters_by_size(self, conn):
        a = make_location(conn)
        make_stock(conn, a, 4, 5.0, created_at=ts(10))
        make_stock(conn, a, 5, 7.0, created_at=ts(0))

        assert [b.size_class for b in get_oldest_batches(conn, size_class=4)] == [4]
