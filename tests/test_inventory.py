"""Location x size read model."""

import pytest

from fishplant.services.inventory import (
    get_available_stock,
    get_available_stock_by_location,
    size_frame,
    stock_frame,
)
from fishplant.services.ledger import ORDER_OUT, SortedSizeInput, create_sorting_batch, post_movement
from tests.factories import make_location, make_stock, movement_count, ts


class TestStockByLocation:

    def test_groups_by_location_and_size(self, conn):
        a = make_location(conn, "Cold A", 100.0)
        make_stock(conn, a, 4, 30.0, created_at=ts(0))
        make_stock(conn, a, 4, 20.0, created_at=ts(1))
        make_stock(conn, a, 6, 5.0, created_at=ts(2))

        rows = get_available_stock_by_location(conn)

        assert [(r.size_class, r.total_weight_kg, r.batch_count) for r in rows] == [(4, 50.0, 2), (6, 5.0, 1)]
        assert rows[0].total_quantity == 100
        assert rows[0].current_usage_kg == pytest.approx(55.0)
        assert rows[0].available_capacity_kg == pytest.approx(45.0)
        assert rows[0].utilization_percent == pytest.approx(55.0)

    def test_contributing_entries_are_in_fifo_order(self, conn):
        a = make_location(conn)
        newer = make_stock(conn, a, 4, 10.0, created_at=ts(3))
        older = make_stock(conn, a, 4, 10.0, created_at=ts(1))

        row = get_available_stock_by_location(conn)[0]

        assert [e.entry_id for e in row.contributing_entries] == [older, newer]

    def test_empty_locations_are_still_listed(self, conn):
        make_location(conn, "Cold B", 80.0)
        a = make_location(conn, "Cold A")
        make_stock(conn, a, 4, 10.0)

        rows = get_available_stock_by_location(conn)

        empty = [r for r in rows if r.storage_location_name == "Cold B"]
        assert len(empty) == 1
        assert empty[0].size_class is None
        assert empty[0].total_weight_kg == 0.0
        assert empty[0].available_capacity_kg == pytest.approx(80.0)

    def test_pending_batches_do_not_count(self, conn):
        a = make_location(conn)
        create_sorting_batch(conn, storage_location_id=a, lines=[SortedSizeInput(4, 10, 5.0)])

        rows = get_available_stock_by_location(conn)

        assert [r.size_class for r in rows] == [None]
        assert rows[0].current_usage_kg == 0.0

    def test_exhausted_entries_are_dropped(self, conn):
        a = make_location(conn)
        gone = make_stock(conn, a, 4, 5.0, pieces=10, created_at=ts(0))
        make_stock(conn, a, 4, 7.0, created_at=ts(1))
        post_movement(
            conn, entry_id=gone, movement_type=ORDER_OUT, pieces_delta=-10,
            weight_kg_delta=-5.0, reference_type="outlet_order", reference_id=1,
        )

        row = get_available_stock_by_location(conn)[0]

        assert gone not in [e.entry_id for e in row.contributing_entries]
        assert row.total_weight_kg == pytest.approx(7.0)

    def test_read_has_no_side_effects(self, conn):
        a = make_location(conn)
        make_stock(conn, a, 4, 5.0)
        before = movement_count(conn)

        first = get_available_stock_by_location(conn)
        second = get_available_stock_by_location(conn)

        assert movement_count(conn) == before
        assert [(r.size_class, r.total_weight_kg) for r in first] == [(r.size_class, r.total_weight_kg) for r in second]


class TestStockBySize:

    def test_sums_across_locations_sorted_by_size(self, conn):
        a = make_location(conn, "Cold A")
        b = make_location(conn, "Cold B")
        make_stock(conn, a, 7, 3.0)
        make_stock(conn, b, 4, 10.0)
        make_stock(conn, a, 4, 5.0)

        stock = get_available_stock(conn)

        assert [(s.size_class, s.total_weight_kg) for s in stock] == [(4, 15.0), (7, 3.0)]
        assert sorted(b.storage_location_name for b in stock[0].storage_locations) == ["Cold A", "Cold B"]


class TestFrames:

    def test_stock_frame_keeps_empty_rows(self, conn):
        make_location(conn, "Cold B")
        a = make_location(conn, "Cold A")
        make_stock(conn, a, 4, 10.0)

        df = stock_frame(get_available_stock_by_location(conn))

        assert list(df["storage_location"]) == ["Cold A", "Cold B"]
        assert df["size_class"].isna().tolist() == [False, True]

    def test_size_frame_columns(self, conn):
        a = make_location(conn)
        make_stock(conn, a, 4, 10.0)

        df = size_frame(get_available_stock(conn))

        assert list(df.columns) == ["size_class", "pieces", "weight_kg", "locations"]
        assert df.iloc[0]["locations"] == "Cold A"
