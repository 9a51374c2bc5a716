"""
FIFO allocator.

fifo_allocate() is a pure planner over live ledger lots: oldest created_at
first, ties broken by entry id (the insert sequence), greedily taking
min(remaining, still needed) from each lot. A shortfall is a normal outcome,
not an error.

Plans are stale the moment they are returned. Anything that commits a plan
must re-plan inside its own transaction and then call apply_plan() there.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from fishplant.errors import ConcurrencyConflictError, ValidationError
from fishplant.services.ledger import LedgerLot, get_live_lot, live_lots, post_movement
from fishplant.utils import SIZE_CLASSES, WEIGHT_EPS_KG, days_since, parse_iso, validate_size_class

logger = logging.getLogger(__name__)

BY_WEIGHT = "weight"
BY_PIECES = "pieces"


@dataclass(frozen=True)
class AllocationLine:
    entry_id: int
    batch_id: int
    batch_number: str
    size_class: int
    storage_location_id: int
    storage_location_name: str
    created_at: str
    quantity_taken: int
    weight_taken_kg: float


@dataclass
class AllocationPlan:
    by: str
    required: float
    size_classes: tuple[int, ...]
    lines: list[AllocationLine] = field(default_factory=list)
    available: float = 0.0
    shortfall: float = 0.0

    @property
    def size_class(self) -> Optional[int]:
        return self.size_classes[0] if len(self.size_classes) == 1 else None

    @property
    def is_satisfied(self) -> bool:
        return self.shortfall <= 0

    @property
    def total_weight_kg(self) -> float:
        return round(sum(l.weight_taken_kg for l in self.lines), 6)

    @property
    def total_pieces(self) -> int:
        return sum(l.quantity_taken for l in self.lines)

    @property
    def allocated(self) -> float:
        return float(self.total_pieces) if self.by == BY_PIECES else self.total_weight_kg

    def weight_by_size(self) -> dict[int, float]:
        out: dict[int, float] = defaultdict(float)
        for l in self.lines:
            out[l.size_class] += l.weight_taken_kg
        return {k: round(v, 6) for k, v in sorted(out.items())}

    def touched_locations(self) -> set[int]:
        return {l.storage_location_id for l in self.lines}


def _fifo_key(lot: LedgerLot):
    return (parse_iso(lot.created_at), lot.entry_id)


def _validate_required(required, by: str) -> float:
    if by not in (BY_WEIGHT, BY_PIECES):
        raise ValidationError(f"Allocation mode must be 'weight' or 'pieces', got {by!r}.")
    try:
        value = float(required)
    except (TypeError, ValueError):
        raise ValidationError("Required amount must be a number.")
    if value < 0:
        raise ValidationError("Required amount must not be negative.")
    if by == BY_PIECES:
        if not value.is_integer():
            raise ValidationError("Required pieces must be a whole number.")
        return float(int(value))
    return value


def fifo_allocate(
    lots: Iterable[LedgerLot],
    required,
    *,
    by: str = BY_WEIGHT,
    size_classes: Sequence[int] = (),
) -> AllocationPlan:
    required = _validate_required(required, by)
    ordered = sorted(lots, key=_fifo_key)

    plan = AllocationPlan(by=by, required=required, size_classes=tuple(size_classes))
    if by == BY_PIECES:
        plan.available = float(sum(l.pieces for l in ordered))
    else:
        plan.available = round(sum(l.weight_kg for l in ordered), 6)

    still = required
    for lot in ordered:
        if still <= (0 if by == BY_PIECES else WEIGHT_EPS_KG):
            break

        if by == BY_PIECES:
            take_pcs = int(min(lot.pieces, still))
            if take_pcs <= 0:
                continue
            if take_pcs == lot.pieces:
                take_kg = lot.weight_kg
            else:
                take_kg = lot.weight_kg * take_pcs / lot.pieces
            still -= take_pcs
        else:
            take_kg = min(lot.weight_kg, still)
            if take_kg <= WEIGHT_EPS_KG:
                continue
            if take_kg >= lot.weight_kg - WEIGHT_EPS_KG:
                take_kg = lot.weight_kg
                take_pcs = lot.pieces
            elif lot.pieces >= 2:
                # Both sides of a partial take keep at least one piece.
                take_pcs = int(round(lot.pieces * take_kg / lot.weight_kg))
                take_pcs = min(lot.pieces - 1, max(1, take_pcs))
            else:
                take_pcs = 0
            still -= take_kg

        plan.lines.append(
            AllocationLine(
                entry_id=lot.entry_id,
                batch_id=lot.batch_id,
                batch_number=lot.batch_number,
                size_class=lot.size_class,
                storage_location_id=lot.storage_location_id,
                storage_location_name=lot.storage_location_name,
                created_at=lot.created_at,
                quantity_taken=int(take_pcs),
                weight_taken_kg=round(float(take_kg), 6),
            )
        )

    shortfall = max(0.0, required - plan.available)
    plan.shortfall = 0.0 if shortfall <= (0 if by == BY_PIECES else WEIGHT_EPS_KG) else round(shortfall, 6)
    return plan


def plan_allocation(
    conn,
    size_class: int,
    required,
    *,
    by: str = BY_WEIGHT,
    storage_location_id: Optional[int] = None,
) -> AllocationPlan:
    """Plan (never apply) a FIFO allocation for one size class."""
    size = validate_size_class(size_class)
    required = _validate_required(required, by)
    lots = live_lots(conn, size_classes=[size], storage_location_id=storage_location_id)
    return fifo_allocate(lots, required, by=by, size_classes=(size,))


def plan_pooled_allocation(conn, size_classes: Iterable[int], required_kg) -> AllocationPlan:
    """'Any size' request: one FIFO pass across every accepted size class."""
    sizes = tuple(sorted({validate_size_class(s) for s in size_classes})) or SIZE_CLASSES
    required = _validate_required(required_kg, BY_WEIGHT)
    lots = live_lots(conn, size_classes=sizes)
    return fifo_allocate(lots, required, by=BY_WEIGHT, size_classes=sizes)


def apply_plan(
    conn,
    plan: AllocationPlan,
    *,
    movement_type: str,
    reference_type: str,
    reference_id: int,
) -> None:
    """
    Post one negative movement per plan line. The caller must hold the
    transaction the plan was computed in; every line is re-checked against the
    live balance so a plan made elsewhere cannot over-draw an entry.
    """
    for line in plan.lines:
        lot = get_live_lot(conn, line.entry_id)
        if (
            lot is None
            or lot.weight_kg + WEIGHT_EPS_KG < line.weight_taken_kg
            or lot.pieces < line.quantity_taken
        ):
            raise ConcurrencyConflictError(
                f"Entry {line.entry_id} ({line.batch_number}) no longer holds "
                f"{line.weight_taken_kg:.3f} kg / {line.quantity_taken} pcs."
            )
        post_movement(
            conn,
            entry_id=line.entry_id,
            movement_type=movement_type,
            pieces_delta=-int(line.quantity_taken),
            weight_kg_delta=-float(line.weight_taken_kg),
            reference_type=reference_type,
            reference_id=reference_id,
        )


@dataclass(frozen=True)
class OldestBatch:
    batch_id: int
    batch_number: str
    size_class: int
    pieces: int
    weight_kg: float
    storage_location_names: tuple[str, ...]
    created_at: str
    days_in_storage: int


def get_oldest_batches(conn, size_class: Optional[int] = None, limit: int = 10) -> list[OldestBatch]:
    """Batches next in line for removal, oldest first, one row per batch and size."""
    sizes = None if size_class is None else [validate_size_class(size_class)]
    grouped: dict[tuple[int, int], list[LedgerLot]] = defaultdict(list)
    for lot in live_lots(conn, size_classes=sizes):
        grouped[(lot.batch_id, lot.size_class)].append(lot)

    out = []
    for (batch_id, size), lots in grouped.items():
        first = min(lots, key=_fifo_key)
        out.append(
            OldestBatch(
                batch_id=batch_id,
                batch_number=first.batch_number,
                size_class=size,
                pieces=sum(l.pieces for l in lots),
                weight_kg=round(sum(l.weight_kg for l in lots), 6),
                storage_location_names=tuple(sorted({l.storage_location_name for l in lots})),
                created_at=first.created_at,
                days_in_storage=days_since(first.created_at),
            )
        )
    out.sort(key=lambda b: (parse_iso(b.created_at), b.batch_id, b.size_class))
    return out[: max(0, int(limit))]
