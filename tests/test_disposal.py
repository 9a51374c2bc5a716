"""Disposal of aged stock and count adjustments."""

from datetime import timedelta

import pytest

from fishplant.db import q
from fishplant.errors import CapacityExceededError, InsufficientStockError, ValidationError
from fishplant.services.allocation import plan_allocation
from fishplant.services.disposal import (
    REASON_AGE,
    REASON_STORAGE_INACTIVE,
    create_inventory_adjustment,
    disposal_items,
    disposal_stats,
    dispose_entries,
    get_inventory_for_disposal,
    list_disposal_records,
)
from fishplant.services.ledger import ADJUSTMENT, DISPOSAL, ORDER_OUT, post_movement
from fishplant.services.storage import get_storage_location, live_usage_kg, set_storage_status
from tests.factories import T0, entry_weight, live_weight, make_location, make_stock, movement_count, ts


@pytest.fixture
def cold_a(conn):
    return make_location(conn, "Cold A", 100.0)


class TestDisposalCandidates:

    def test_selects_entries_past_the_age_threshold(self, conn, cold_a):
        old = make_stock(conn, cold_a, 4, 10.0, created_at=ts(0))
        make_stock(conn, cold_a, 4, 10.0, created_at=ts(24 * 20))

        found = get_inventory_for_disposal(conn, 30, now=T0 + timedelta(days=40))

        assert [c.entry_id for c in found] == [old]
        assert found[0].days_in_storage == 40
        assert found[0].reason == REASON_AGE

    def test_inactive_room_stock_is_listed_regardless_of_age(self, conn, cold_a):
        cold_b = make_location(conn, "Cold B", 100.0)
        stranded = make_stock(conn, cold_b, 6, 5.0, created_at=ts(24 * 39))
        set_storage_status(conn, cold_b, "inactive")
        now = T0 + timedelta(days=40)

        found = get_inventory_for_disposal(conn, 30, now=now)
        assert [(c.entry_id, c.reason) for c in found] == [(stranded, REASON_STORAGE_INACTIVE)]

        assert get_inventory_for_disposal(conn, 30, include_storage_issues=False, now=now) == []

    def test_negative_threshold_rejected(self, conn):
        with pytest.raises(ValidationError):
            get_inventory_for_disposal(conn, -1)


class TestDisposeEntries:

    def test_writes_off_entries_in_full(self, conn, cold_a):
        first = make_stock(conn, cold_a, 4, 10.0, pieces=20, created_at=ts(0))
        second = make_stock(conn, cold_a, 6, 4.0, pieces=8, created_at=ts(1))
        kept = make_stock(conn, cold_a, 4, 7.0, created_at=ts(2))

        result = dispose_entries(conn, [first, second], reason="Age", disposal_cost=150.0, disposed_by="supervisor")

        assert result.ok, result.message
        record = result.value
        assert record.disposal_number.startswith("DSP-")
        assert (record.total_pieces, record.total_weight_kg) == (28, pytest.approx(14.0))
        assert entry_weight(conn, first) == pytest.approx(0.0)
        assert entry_weight(conn, second) == pytest.approx(0.0)
        assert live_weight(conn, cold_a) == pytest.approx(7.0)
        assert movement_count(conn, DISPOSAL) == 2
        assert [r["entry_id"] for r in disposal_items(conn, record.id)] == [first, second]
        assert get_storage_location(conn, cold_a)["current_usage_kg"] == pytest.approx(7.0)
        assert [l.entry_id for l in plan_allocation(conn, 4, 10.0).lines] == [kept]

    def test_one_spent_entry_rejects_the_whole_disposal(self, conn, cold_a):
        live = make_stock(conn, cold_a, 4, 10.0)
        spent = make_stock(conn, cold_a, 4, 5.0, pieces=10)
        post_movement(
            conn, entry_id=spent, movement_type=ORDER_OUT, pieces_delta=-10,
            weight_kg_delta=-5.0, reference_type="outlet_order", reference_id=1,
        )
        before = movement_count(conn)

        result = dispose_entries(conn, [live, spent], reason="Quality")

        assert isinstance(result.error, InsufficientStockError)
        assert movement_count(conn) == before
        assert entry_weight(conn, live) == pytest.approx(10.0)
        assert list_disposal_records(conn) == []

    @pytest.mark.parametrize(
        "ids,kwargs",
        [([], {"reason": "Age"}), ([1, 1], {"reason": "Age"}), ([1], {"reason": "Spite"}), ([1], {"reason": "Age", "disposal_cost": -5})],
    )
    def test_malformed_requests_rejected(self, conn, cold_a, ids, kwargs):
        make_stock(conn, cold_a, 4, 10.0)

        result = dispose_entries(conn, ids, **kwargs)

        assert isinstance(result.error, ValidationError)
        assert movement_count(conn, DISPOSAL) == 0

    def test_audit_event_written(self, conn, cold_a):
        entry = make_stock(conn, cold_a, 4, 10.0)
        record = dispose_entries(conn, [entry], reason="Damage", disposed_by="supervisor").value

        rows = q(conn, "SELECT action, user_id FROM audit_logs WHERE table_name='disposal_records' AND record_id=?", (str(record.id),))
        assert [(r["action"], r["user_id"]) for r in rows] == [("DISPOSAL_CREATE", "supervisor")]

    def test_stats_summarise_records(self, conn, cold_a):
        a = make_stock(conn, cold_a, 4, 10.0, created_at=ts(0))
        b = make_stock(conn, cold_a, 4, 6.0, created_at=ts(1))
        c = make_stock(conn, cold_a, 5, 2.0, created_at=ts(2))
        dispose_entries(conn, [a], reason="Quality", disposal_cost=100.0)
        dispose_entries(conn, [b, c], reason="Quality", disposal_cost=50.0)

        stats = disposal_stats(conn)

        assert stats.total_disposals == 2
        assert stats.total_disposed_weight_kg == pytest.approx(18.0)
        assert stats.total_disposal_cost == pytest.approx(150.0)
        assert stats.recent_disposals == 2
        assert stats.top_disposal_reason == "Quality"
        assert stats.average_disposal_age_days > 0

    def test_stats_with_no_disposals(self, conn):
        stats = disposal_stats(conn)

        assert stats.total_disposals == 0
        assert stats.average_disposal_age_days == 0.0
        assert stats.top_disposal_reason == REASON_AGE


class TestInventoryAdjustment:

    def test_count_correction_posts_an_adjustment(self, conn, cold_a):
        entry = make_stock(conn, cold_a, 4, 10.0, pieces=20)

        result = create_inventory_adjustment(
            conn, entry, pieces_delta=-2, weight_kg_delta=-0.8, notes="recount", adjusted_by="clerk"
        )

        assert result.ok, result.message
        assert (result.value.pieces, result.value.weight_kg) == (18, pytest.approx(9.2))
        assert movement_count(conn, ADJUSTMENT) == 1
        assert get_storage_location(conn, cold_a)["current_usage_kg"] == pytest.approx(9.2)

    def test_adjusting_to_zero_exhausts_the_entry(self, conn, cold_a):
        entry = make_stock(conn, cold_a, 4, 10.0, pieces=20)

        result = create_inventory_adjustment(conn, entry, pieces_delta=-20, weight_kg_delta=-10.0)

        assert result.ok
        assert result.value is None
        assert live_weight(conn, cold_a) == 0.0

    @pytest.mark.parametrize("pcs,kg", [(-20, -4.0), (0, -10.0), (0, 0.0)])
    def test_inconsistent_result_rejected(self, conn, cold_a, pcs, kg):
        entry = make_stock(conn, cold_a, 4, 10.0, pieces=20)

        result = create_inventory_adjustment(conn, entry, pieces_delta=pcs, weight_kg_delta=kg)

        assert isinstance(result.error, ValidationError)
        assert movement_count(conn, ADJUSTMENT) == 0

    def test_cannot_remove_more_than_held(self, conn, cold_a):
        entry = make_stock(conn, cold_a, 4, 10.0, pieces=20)

        result = create_inventory_adjustment(conn, entry, pieces_delta=-5, weight_kg_delta=-12.0)

        assert isinstance(result.error, InsufficientStockError)
        assert result.error.shortfall == pytest.approx(2.0)

    def test_increase_must_fit_the_room(self, conn):
        small = make_location(conn, "Cold B", 12.0)
        entry = make_stock(conn, small, 4, 10.0, pieces=20)

        result = create_inventory_adjustment(conn, entry, pieces_delta=4, weight_kg_delta=3.0)

        assert isinstance(result.error, CapacityExceededError)
        assert result.error.available_kg == pytest.approx(2.0)
        assert live_usage_kg(conn, small) == pytest.approx(10.0)
