from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta, timezone

from fishplant.db import q, x, ensure_schema, transaction
from fishplant.services.ledger import SortedSizeInput, complete_sorting_batch, create_sorting_batch
from fishplant.services.orders import create_order

logger = logging.getLogger(__name__)

DEFAULT_STORAGE = [
    ("Cold A", "cold_storage", 500.0),
    ("Cold B", "cold_storage", 400.0),
    ("Blast Freezer", "freezer", 300.0),
]
DEFAULT_OUTLETS = [
    ("Kisumu Market", "Kisumu"),
    ("Nairobi Depot", "Nairobi"),
    ("Busia Outlet", "Busia"),
]


def upsert_reference_data(conn) -> None:
    ensure_schema(conn)

    now = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
    for name, kind, capacity in DEFAULT_STORAGE:
        x(
            conn,
            """
            INSERT OR IGNORE INTO storage_locations(name, location_type, capacity_kg, current_usage_kg, status, created_at)
            VALUES (?, ?, ?, 0, 'active', ?)
            """,
            (name, kind, float(capacity), now),
        )

    for name, location in DEFAULT_OUTLETS:
        x(conn, "INSERT OR IGNORE INTO outlets(name, location, status) VALUES (?, ?, 'active')", (name, location))


def wipe_all(conn) -> None:
    # Keep schema, delete data (order matters for FKs).
    with transaction(conn):
        for t in [
            "audit_logs",
            "dispatch_records",
            "disposal_items",
            "disposal_records",
            "outlet_orders",
            "stock_movements",
            "stock_entries",
            "transfers",
            "sorting_batch_lines",
            "sorting_batches",
            "outlets",
            "storage_locations",
        ]:
            x(conn, f"DELETE FROM {t};")
    logger.info("Wiped all plant data")


def load_demo_data(conn, *, seed: int = 7) -> None:
    random.seed(seed)
    upsert_reference_data(conn)

    locations = q(conn, "SELECT * FROM storage_locations WHERE status='active' ORDER BY id")
    outlets = q(conn, "SELECT * FROM outlets ORDER BY id")

    # Six completed sorting runs over the last few days, oldest first
    base = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(days=5)
    for i in range(6):
        loc = locations[i % len(locations)]
        completed_at = (base + timedelta(days=i, hours=random.randint(0, 6))).isoformat()

        lines = []
        for size in random.sample(range(2, 9), 4):
            pcs = random.randint(15, 40)
            avg = random.uniform(0.25, 0.45) + 0.05 * (8 - size)
            lines.append(SortedSizeInput(size_class=size, pieces=pcs, weight_kg=round(pcs * avg, 3)))

        batch_id = create_sorting_batch(
            conn,
            storage_location_id=int(loc["id"]),
            lines=lines,
            processing_record_id=f"PR-DEMO-{i + 1:03d}",
            notes="Demo sorting run",
            created_at=completed_at,
        )
        complete_sorting_batch(conn, batch_id, completed_at=completed_at, completed_by="demo")

    # A few pending orders, per-size and any-size
    for i, outlet in enumerate(outlets):
        if i % 2 == 0:
            create_order(
                conn,
                outlet_id=int(outlet["id"]),
                requested_quantity_kg=None,
                size_quantities={4: round(random.uniform(5, 15), 1), 6: round(random.uniform(5, 15), 1)},
                price_per_kg=420.0,
                notes="Demo order",
                created_by="demo",
            )
        else:
            create_order(
                conn,
                outlet_id=int(outlet["id"]),
                requested_quantity_kg=round(random.uniform(10, 30), 1),
                requested_sizes=(),
                price_per_kg=390.0,
                notes="Demo any-size order",
                created_by="demo",
            )
