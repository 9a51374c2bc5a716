"""
Storage location registry.

Capacity is configured per location; usage is always derived live from the
ledger. The current_usage_kg column is a display cache rewritten by
refresh_usage() and never read for a correctness decision.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from fishplant.db import q, x, transaction
from fishplant.errors import NotFoundError, ValidationError
from fishplant.utils import WEIGHT_EPS_GRAMS, grams_to_kg, iso_now, safe_div, validate_positive_kg

logger = logging.getLogger(__name__)

STORAGE_STATUSES = {"active", "inactive"}


@dataclass
class StorageUsage:
    storage_location_id: int
    name: str
    location_type: str
    status: str
    capacity_kg: float
    current_usage_kg: float
    available_capacity_kg: float
    utilization_percent: float
    cached_usage_kg: float

    @property
    def cache_drift_kg(self) -> float:
        return round(self.cached_usage_kg - self.current_usage_kg, 6)


# Live grams per location over completed batches only. Entries count only
# while live (pieces and weight both above zero), the same cut live_lots uses.
LIVE_USAGE_SQL = """
    SELECT storage_location_id, COALESCE(SUM(weight_grams), 0) AS weight_grams
    FROM (
        SELECT e.storage_location_id AS storage_location_id,
               SUM(m.pieces_delta) AS pieces,
               SUM(m.weight_grams_delta) AS weight_grams
        FROM stock_entries e
        JOIN sorting_batches b ON b.id = e.batch_id
        JOIN stock_movements m ON m.entry_id = e.id
        WHERE b.status = 'completed' {where}
        GROUP BY e.id
        HAVING pieces > 0 AND weight_grams > ?
    )
    GROUP BY storage_location_id
"""


def create_storage_location(
    conn,
    *,
    name: str,
    capacity_kg: float,
    location_type: str = "cold_storage",
    status: str = "active",
) -> int:
    name = str(name or "").strip()
    if not name:
        raise ValidationError("Storage location name is required.")
    capacity = validate_positive_kg(capacity_kg, "Capacity")
    if status not in STORAGE_STATUSES:
        raise ValidationError(f"Invalid storage status {status!r}.")

    if q(conn, "SELECT 1 FROM storage_locations WHERE name=?", (name,)):
        raise ValidationError(f"Storage location {name!r} already exists.")

    loc_id = x(
        conn,
        """
        INSERT INTO storage_locations (name, location_type, capacity_kg, current_usage_kg, status, created_at)
        VALUES (?, ?, ?, 0, ?, ?)
        """,
        (name, str(location_type), capacity, status, iso_now()),
    )
    logger.info("Created storage location %s (%s, %.1f kg)", loc_id, name, capacity)
    return loc_id


def get_storage_location(conn, location_id: int):
    rows = q(conn, "SELECT * FROM storage_locations WHERE id=?", (int(location_id),))
    if not rows:
        raise NotFoundError(f"Storage location {location_id} not found.")
    return rows[0]


def list_storage_locations(conn, status: Optional[str] = None):
    if status:
        return q(conn, "SELECT * FROM storage_locations WHERE status=? ORDER BY name", (status,))
    return q(conn, "SELECT * FROM storage_locations ORDER BY name")


def set_storage_status(conn, location_id: int, status: str) -> None:
    if status not in STORAGE_STATUSES:
        raise ValidationError(f"Invalid storage status {status!r}.")
    get_storage_location(conn, location_id)
    x(conn, "UPDATE storage_locations SET status=? WHERE id=?", (status, int(location_id)))


def live_usage_by_location(conn) -> dict[int, float]:
    rows = q(conn, LIVE_USAGE_SQL.format(where=""), (WEIGHT_EPS_GRAMS,))
    return {int(r["storage_location_id"]): grams_to_kg(r["weight_grams"]) for r in rows}


def live_usage_kg(conn, location_id: int) -> float:
    rows = q(
        conn,
        LIVE_USAGE_SQL.format(where="AND e.storage_location_id = ?"),
        (int(location_id), WEIGHT_EPS_GRAMS),
    )
    return max(0.0, grams_to_kg(rows[0]["weight_grams"])) if rows else 0.0


def available_capacity_kg(conn, location_id: int) -> float:
    loc = get_storage_location(conn, location_id)
    return max(0.0, float(loc["capacity_kg"]) - live_usage_kg(conn, location_id))


def _usage_row(loc, usage_kg: float) -> StorageUsage:
    capacity = float(loc["capacity_kg"])
    usage = max(0.0, float(usage_kg))
    return StorageUsage(
        storage_location_id=int(loc["id"]),
        name=str(loc["name"]),
        location_type=str(loc["location_type"]),
        status=str(loc["status"]),
        capacity_kg=capacity,
        current_usage_kg=usage,
        available_capacity_kg=max(0.0, capacity - usage),
        utilization_percent=round(safe_div(usage, capacity) * 100.0, 2),
        cached_usage_kg=float(loc["current_usage_kg"]),
    )


def capacity_status(conn) -> list[StorageUsage]:
    with transaction(conn, immediate=False):
        locations = list_storage_locations(conn)
        usage = live_usage_by_location(conn)
    return [_usage_row(loc, usage.get(int(loc["id"]), 0.0)) for loc in locations]


def available_locations_for_transfer(conn, exclude_id: Optional[int] = None) -> list[StorageUsage]:
    rows = [u for u in capacity_status(conn) if u.status == "active"]
    if exclude_id is not None:
        rows = [u for u in rows if u.storage_location_id != int(exclude_id)]
    return rows


def refresh_usage(conn, location_ids: Optional[Iterable[int]] = None) -> dict[int, float]:
    """
    Rewrite the advisory current_usage_kg cache from live ledger sums.
    Runs inside the caller's transaction when one is open.
    """
    with transaction(conn):
        usage = live_usage_by_location(conn)
        if location_ids is None:
            ids = [int(r["id"]) for r in q(conn, "SELECT id FROM storage_locations")]
        else:
            ids = sorted({int(i) for i in location_ids})
        out: dict[int, float] = {}
        for loc_id in ids:
            kg = round(max(0.0, usage.get(loc_id, 0.0)), 6)
            x(conn, "UPDATE storage_locations SET current_usage_kg=? WHERE id=?", (kg, loc_id))
            out[loc_id] = kg
    return out
