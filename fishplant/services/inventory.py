from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional

import pandas as pd

from fishplant.db import transaction
from fishplant.services.ledger import LedgerLot, live_lots
from fishplant.services.storage import list_storage_locations
from fishplant.utils import safe_div


@dataclass
class LocationSizeStock:
    storage_location_id: int
    storage_location_name: str
    storage_location_type: str
    storage_status: str
    capacity_kg: float
    current_usage_kg: float
    available_capacity_kg: float
    utilization_percent: float
    size_class: Optional[int]
    total_quantity: int = 0
    total_weight_kg: float = 0.0
    contributing_entries: list[LedgerLot] = field(default_factory=list)

    @property
    def batch_count(self) -> int:
        return len(self.contributing_entries)


@dataclass
class LocationBreakdown:
    storage_location_id: int
    storage_location_name: str
    quantity: int
    weight_kg: float
    contributing_entries: list[LedgerLot]


@dataclass
class SizeStock:
    size_class: int
    total_quantity: int
    total_weight_kg: float
    storage_locations: list[LocationBreakdown]


def get_available_stock_by_location(conn) -> list[LocationSizeStock]:
    """
    Location x size read model over live entries of completed batches.

    Registry and ledger are read in one snapshot. Locations holding nothing
    are still returned (size_class=None) so unused capacity stays visible.
    Usage here is the live sum, never the cached counter.
    """
    with transaction(conn, immediate=False):
        locations = list_storage_locations(conn)
        lots = live_lots(conn)

    grouped: dict[int, dict[int, list[LedgerLot]]] = defaultdict(lambda: defaultdict(list))
    for lot in lots:
        grouped[lot.storage_location_id][lot.size_class].append(lot)

    out: list[LocationSizeStock] = []
    for loc in locations:
        loc_id = int(loc["id"])
        sizes = grouped.get(loc_id, {})
        capacity = float(loc["capacity_kg"])
        usage = round(sum(l.weight_kg for group in sizes.values() for l in group), 6)
        common = dict(
            storage_location_id=loc_id,
            storage_location_name=str(loc["name"]),
            storage_location_type=str(loc["location_type"]),
            storage_status=str(loc["status"]),
            capacity_kg=capacity,
            current_usage_kg=usage,
            available_capacity_kg=max(0.0, capacity - usage),
            utilization_percent=round(safe_div(usage, capacity) * 100.0, 2),
        )
        if not sizes:
            out.append(LocationSizeStock(size_class=None, **common))
            continue
        for size in sorted(sizes):
            entries = sizes[size]
            out.append(
                LocationSizeStock(
                    size_class=size,
                    total_quantity=sum(l.pieces for l in entries),
                    total_weight_kg=round(sum(l.weight_kg for l in entries), 6),
                    contributing_entries=list(entries),
                    **common,
                )
            )

    out.sort(key=lambda r: (r.storage_location_name, -1 if r.size_class is None else r.size_class))
    return out


def get_available_stock(conn) -> list[SizeStock]:
    """Per size class across all locations, smallest class number first."""
    by_size: dict[int, list[LocationSizeStock]] = defaultdict(list)
    for row in get_available_stock_by_location(conn):
        if row.size_class is not None:
            by_size[row.size_class].append(row)

    return [
        SizeStock(
            size_class=size,
            total_quantity=sum(r.total_quantity for r in rows),
            total_weight_kg=round(sum(r.total_weight_kg for r in rows), 6),
            storage_locations=[
                LocationBreakdown(
                    storage_location_id=r.storage_location_id,
                    storage_location_name=r.storage_location_name,
                    quantity=r.total_quantity,
                    weight_kg=r.total_weight_kg,
                    contributing_entries=r.contributing_entries,
                )
                for r in rows
            ],
        )
        for size, rows in sorted(by_size.items())
    ]


# -------------------------
# Display frames
# -------------------------

def stock_frame(rows: list[LocationSizeStock]) -> pd.DataFrame:
    columns = [
        "storage_location", "status", "size_class", "pieces", "weight_kg", "batches",
        "capacity_kg", "usage_kg", "available_kg", "utilization_pct",
    ]
    records = [
        {
            "storage_location": r.storage_location_name,
            "status": r.storage_status,
            "size_class": r.size_class,
            "pieces": r.total_quantity,
            "weight_kg": round(r.total_weight_kg, 3),
            "batches": r.batch_count,
            "capacity_kg": round(r.capacity_kg, 3),
            "usage_kg": round(r.current_usage_kg, 3),
            "available_kg": round(r.available_capacity_kg, 3),
            "utilization_pct": r.utilization_percent,
        }
        for r in rows
    ]
    df = pd.DataFrame(records, columns=columns)
    df["size_class"] = df["size_class"].astype("Int64")
    return df


def size_frame(stock: list[SizeStock]) -> pd.DataFrame:
    records = [
        {
            "size_class": s.size_class,
            "pieces": s.total_quantity,
            "weight_kg": round(s.total_weight_kg, 3),
            "locations": ", ".join(b.storage_location_name for b in s.storage_locations),
        }
        for s in stock
    ]
    return pd.DataFrame(records, columns=["size_class", "pieces", "weight_kg", "locations"])


def lots_frame(lots: list[LedgerLot]) -> pd.DataFrame:
    records = [
        {
            "entry_id": l.entry_id,
            "batch_number": l.batch_number,
            "size_class": l.size_class,
            "storage_location": l.storage_location_name,
            "pieces": l.pieces,
            "weight_kg": round(l.weight_kg, 3),
            "created_at": l.created_at,
            "transferred": l.is_transfer,
        }
        for l in lots
    ]
    return pd.DataFrame(
        records,
        columns=[
            "entry_id", "batch_number", "size_class", "storage_location",
            "pieces", "weight_kg", "created_at", "transferred",
        ],
    )
