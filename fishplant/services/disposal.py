"""
Disposal and stock-count adjustments.

Disposal writes off whole live entries (aged stock, or stock sitting in a
room that is no longer active). Adjustments correct one entry by a signed
amount after a physical count. Both post movements to the ledger inside one
writer transaction; nothing is ever edited in place.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import pandas as pd

from fishplant.db import q, x, transaction
from fishplant.errors import (
    BusinessRuleError,
    CapacityExceededError,
    InsufficientStockError,
    NotFoundError,
    OperationResult,
    ValidationError,
)
from fishplant.services.audit import record_event
from fishplant.services.ledger import ADJUSTMENT, DISPOSAL, get_live_lot, live_lots, post_movement
from fishplant.services.storage import get_storage_location, list_storage_locations, live_usage_kg, refresh_usage
from fishplant.utils import WEIGHT_EPS_KG, days_since, iso_now, parse_iso

logger = logging.getLogger(__name__)

REASON_AGE = "Age"
REASON_STORAGE_INACTIVE = "Storage Inactive"
DISPOSAL_REASONS = (REASON_AGE, REASON_STORAGE_INACTIVE, "Quality", "Damage", "Other")


@dataclass(frozen=True)
class DisposalCandidate:
    entry_id: int
    batch_number: str
    size_class: int
    storage_location_id: int
    storage_location_name: str
    pieces: int
    weight_kg: float
    created_at: str
    days_in_storage: int
    reason: str


@dataclass
class DisposalRecord:
    id: int
    disposal_number: str
    reason: str
    status: str
    total_pieces: int
    total_weight_kg: float
    disposal_cost: float
    disposal_method: Optional[str]
    notes: Optional[str]
    disposed_by: Optional[str]
    disposal_date: str
    created_at: str

    @classmethod
    def from_row(cls, r) -> "DisposalRecord":
        return cls(
            id=int(r["id"]),
            disposal_number=str(r["disposal_number"]),
            reason=str(r["reason"]),
            status=str(r["status"]),
            total_pieces=int(r["total_pieces"]),
            total_weight_kg=float(r["total_weight_kg"]),
            disposal_cost=float(r["disposal_cost"]),
            disposal_method=r["disposal_method"],
            notes=r["notes"],
            disposed_by=r["disposed_by"],
            disposal_date=str(r["disposal_date"]),
            created_at=str(r["created_at"]),
        )


@dataclass(frozen=True)
class DisposalStats:
    total_disposals: int
    total_disposed_weight_kg: float
    total_disposal_cost: float
    recent_disposals: int
    average_disposal_age_days: float
    top_disposal_reason: str


# -------------------------
# Candidates
# -------------------------

def get_inventory_for_disposal(
    conn,
    days_old: int = 30,
    *,
    include_storage_issues: bool = True,
    now: Optional[datetime] = None,
) -> list[DisposalCandidate]:
    """
    Live entries at least days_old days in storage, plus (optionally) any live
    entry in an inactive room regardless of age. Oldest first.
    """
    try:
        days_old = int(days_old)
    except (TypeError, ValueError):
        raise ValidationError("Days in storage must be a whole number.")
    if days_old < 0:
        raise ValidationError("Days in storage must not be negative.")

    with transaction(conn, immediate=False):
        lots = live_lots(conn)
        statuses = {int(r["id"]): str(r["status"]) for r in list_storage_locations(conn)}

    out: list[DisposalCandidate] = []
    for lot in lots:
        age = days_since(lot.created_at, now=now)
        inactive = statuses.get(lot.storage_location_id) != "active"
        if age < days_old and not (include_storage_issues and inactive):
            continue
        out.append(
            DisposalCandidate(
                entry_id=lot.entry_id,
                batch_number=lot.batch_number,
                size_class=lot.size_class,
                storage_location_id=lot.storage_location_id,
                storage_location_name=lot.storage_location_name,
                pieces=lot.pieces,
                weight_kg=lot.weight_kg,
                created_at=lot.created_at,
                days_in_storage=age,
                reason=REASON_STORAGE_INACTIVE if inactive else REASON_AGE,
            )
        )
    return out


def candidates_frame(candidates: Iterable[DisposalCandidate]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "entry_id": c.entry_id,
                "batch": c.batch_number,
                "size_class": c.size_class,
                "storage_location": c.storage_location_name,
                "pieces": c.pieces,
                "weight_kg": round(c.weight_kg, 3),
                "days_in_storage": c.days_in_storage,
                "reason": c.reason,
            }
            for c in candidates
        ],
        columns=["entry_id", "batch", "size_class", "storage_location", "pieces", "weight_kg", "days_in_storage", "reason"],
    )


# -------------------------
# Disposal
# -------------------------

def _generate_disposal_number(conn, disposal_date: str) -> str:
    ymd = str(disposal_date)[:10].replace("-", "")
    prefix = f"DSP-{ymd}-"
    r = q(conn, "SELECT COUNT(1) AS n FROM disposal_records WHERE disposal_number LIKE ?", (prefix + "%",))
    n = int(r[0]["n"]) if r else 0
    return f"{prefix}{n + 1:04d}"


def _validate_entry_ids(entry_ids: Iterable[int]) -> list[int]:
    out: list[int] = []
    for raw in entry_ids:
        try:
            entry_id = int(raw)
        except (TypeError, ValueError):
            raise ValidationError("Entry ids must be integers.")
        if entry_id in out:
            raise ValidationError(f"Entry {entry_id} is listed more than once.")
        out.append(entry_id)
    if not out:
        raise ValidationError("Select at least one entry to dispose of.")
    return out


def get_disposal_record(conn, disposal_id: int) -> DisposalRecord:
    rows = q(conn, "SELECT * FROM disposal_records WHERE id=?", (int(disposal_id),))
    if not rows:
        raise NotFoundError(f"Disposal record {disposal_id} not found.")
    return DisposalRecord.from_row(rows[0])


def list_disposal_records(conn, limit: int = 50) -> list[DisposalRecord]:
    rows = q(conn, "SELECT * FROM disposal_records ORDER BY created_at DESC, id DESC LIMIT ?", (int(limit),))
    return [DisposalRecord.from_row(r) for r in rows]


def disposal_items(conn, disposal_id: int):
    return q(conn, "SELECT * FROM disposal_items WHERE disposal_id=? ORDER BY id", (int(disposal_id),))


def dispose_entries(
    conn,
    entry_ids: Iterable[int],
    *,
    reason: str,
    disposal_cost: float = 0.0,
    disposal_method: Optional[str] = None,
    notes: Optional[str] = None,
    disposed_by: Optional[str] = None,
) -> OperationResult:
    """
    Write off every listed entry in full. All entries go in one record or
    none do: an entry that is no longer live rejects the whole disposal.
    """
    try:
        ids = _validate_entry_ids(entry_ids)
        reason = str(reason or "").strip()
        if reason not in DISPOSAL_REASONS:
            raise ValidationError(f"Unknown disposal reason {reason!r}.")
        try:
            cost = float(disposal_cost or 0.0)
        except (TypeError, ValueError):
            raise ValidationError("Disposal cost must be a number.")
        if cost < 0:
            raise ValidationError("Disposal cost must not be negative.")

        now = iso_now()
        with transaction(conn):
            lots = []
            for entry_id in ids:
                lot = get_live_lot(conn, entry_id)
                if lot is None:
                    raise InsufficientStockError(f"Entry {entry_id} has no live stock to dispose of.")
                lots.append(lot)

            total_pcs = sum(l.pieces for l in lots)
            total_kg = round(sum(l.weight_kg for l in lots), 6)
            disposal_id = x(
                conn,
                """
                INSERT INTO disposal_records (
                    disposal_number, reason, status, total_pieces, total_weight_kg,
                    disposal_cost, disposal_method, notes, disposed_by, disposal_date, created_at
                ) VALUES (?, ?, 'completed', ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _generate_disposal_number(conn, now),
                    reason,
                    total_pcs,
                    total_kg,
                    cost,
                    disposal_method,
                    notes,
                    disposed_by,
                    now,
                    now,
                ),
            )
            for lot in lots:
                post_movement(
                    conn,
                    entry_id=lot.entry_id,
                    movement_type=DISPOSAL,
                    pieces_delta=-lot.pieces,
                    weight_kg_delta=-lot.weight_kg,
                    reference_type="disposal",
                    reference_id=disposal_id,
                )
                x(
                    conn,
                    """
                    INSERT INTO disposal_items (
                        disposal_id, entry_id, size_class, storage_location_id, pieces, weight_kg, days_in_storage
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        disposal_id,
                        lot.entry_id,
                        lot.size_class,
                        lot.storage_location_id,
                        lot.pieces,
                        lot.weight_kg,
                        days_since(lot.created_at),
                    ),
                )
            refresh_usage(conn, {l.storage_location_id for l in lots})
    except BusinessRuleError as exc:
        logger.warning("Disposal rejected: %s", exc)
        return OperationResult.failure(exc)

    record = get_disposal_record(conn, disposal_id)
    logger.info(
        "Disposal %s by %s: %d entries, %.3f kg (%s)",
        record.disposal_number, disposed_by, len(lots), record.total_weight_kg, reason,
    )
    record_event(
        conn,
        action="DISPOSAL_CREATE",
        table_name="disposal_records",
        record_id=record.id,
        new_values={"reason": reason, "entries": ids, "total_weight_kg": record.total_weight_kg},
        user_id=disposed_by,
    )
    return OperationResult.success(f"Disposal {record.disposal_number} recorded.", value=record)


def disposal_stats(conn, *, now: Optional[datetime] = None) -> DisposalStats:
    now = now or datetime.now(timezone.utc)
    records = list_disposal_records(conn, limit=-1)
    ages = [int(r["days_in_storage"]) for r in q(conn, "SELECT days_in_storage FROM disposal_items")]
    reasons = Counter(r.reason for r in records)
    week_ago = now - timedelta(days=7)
    return DisposalStats(
        total_disposals=len(records),
        total_disposed_weight_kg=round(sum(r.total_weight_kg for r in records), 6),
        total_disposal_cost=round(sum(r.disposal_cost for r in records), 2),
        recent_disposals=sum(1 for r in records if parse_iso(r.created_at) >= week_ago),
        average_disposal_age_days=round(sum(ages) / len(ages), 1) if ages else 0.0,
        top_disposal_reason=reasons.most_common(1)[0][0] if reasons else REASON_AGE,
    )


# -------------------------
# Adjustments
# -------------------------

def create_inventory_adjustment(
    conn,
    entry_id: int,
    *,
    pieces_delta: int = 0,
    weight_kg_delta: float = 0.0,
    notes: Optional[str] = None,
    adjusted_by: Optional[str] = None,
) -> OperationResult:
    """
    Correct one live entry by a signed amount. The entry must stay consistent
    (pieces and weight reach zero together) and a positive correction must fit
    the room it sits in.
    """
    try:
        try:
            pcs = int(pieces_delta)
            kg = float(weight_kg_delta)
        except (TypeError, ValueError):
            raise ValidationError("Adjustment amounts must be numbers.")
        if pcs == 0 and abs(kg) <= WEIGHT_EPS_KG:
            raise ValidationError("Adjustment changes nothing.")

        with transaction(conn):
            lot = get_live_lot(conn, entry_id)
            if lot is None:
                raise ValidationError(f"Entry {entry_id} has no live stock to adjust.")

            pcs_after = lot.pieces + pcs
            kg_after = lot.weight_kg + kg
            if pcs_after < 0 or kg_after < -WEIGHT_EPS_KG:
                raise InsufficientStockError(
                    f"Entry {lot.entry_id} holds {lot.pieces} pcs / {lot.weight_kg:.3f} kg; "
                    f"cannot remove {-pcs} pcs / {-kg:.3f} kg.",
                    shortfall=max(0.0, -kg_after),
                    shortfalls={lot.size_class: max(0.0, -kg_after)},
                )
            if (pcs_after == 0) != (kg_after <= WEIGHT_EPS_KG):
                raise ValidationError(
                    f"Entry {lot.entry_id} would be left with {pcs_after} pcs and {max(0.0, kg_after):.3f} kg."
                )
            if kg > WEIGHT_EPS_KG:
                loc = get_storage_location(conn, lot.storage_location_id)
                room = float(loc["capacity_kg"]) - live_usage_kg(conn, lot.storage_location_id)
                if kg > room + WEIGHT_EPS_KG:
                    raise CapacityExceededError(
                        f"{loc['name']} has {max(0.0, room):.2f} kg free; adjustment adds {kg:.2f} kg.",
                        required_kg=kg,
                        available_kg=max(0.0, room),
                    )

            post_movement(
                conn,
                entry_id=lot.entry_id,
                movement_type=ADJUSTMENT,
                pieces_delta=pcs,
                weight_kg_delta=max(kg, -lot.weight_kg),
                reference_type="adjustment",
                reference_id=None,
            )
            refresh_usage(conn, [lot.storage_location_id])
    except BusinessRuleError as exc:
        logger.warning("Adjustment of entry %s rejected: %s", entry_id, exc)
        return OperationResult.failure(exc)

    logger.info("Entry %s adjusted by %s: %+d pcs, %+.3f kg", lot.entry_id, adjusted_by, pcs, kg)
    record_event(
        conn,
        action="INVENTORY_ADJUSTMENT",
        table_name="stock_entries",
        record_id=lot.entry_id,
        old_values={"pieces": lot.pieces, "weight_kg": lot.weight_kg},
        new_values={"pieces": pcs_after, "weight_kg": round(max(0.0, kg_after), 6), "notes": notes},
        user_id=adjusted_by,
    )
    return OperationResult.success(
        f"Entry {lot.entry_id} adjusted.", value=get_live_lot(conn, lot.entry_id)
    )
