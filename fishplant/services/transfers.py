"""
Transfer manager.

Lifecycle: pending -> approved | declined, approved -> completed.
Only approval touches the ledger: stock is re-planned FIFO at the source and
the destination capacity re-checked against live usage, inside the same
transaction that moves the weight. Rows created together by one batch
request share a transfer_group and are approved or declined together.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, replace
from typing import Optional

from fishplant.db import q, x, transaction
from fishplant.errors import (
    BusinessRuleError,
    CapacityExceededError,
    DuplicateRequestError,
    InsufficientStockError,
    NotFoundError,
    OperationResult,
    ValidationError,
)
from fishplant.services.allocation import BY_WEIGHT, AllocationPlan, apply_plan, fifo_allocate
from fishplant.services.audit import record_event
from fishplant.services.ledger import TRANSFER_IN, TRANSFER_OUT, LedgerLot, append_entry, live_lots
from fishplant.services.storage import get_storage_location, live_usage_kg, refresh_usage
from fishplant.utils import WEIGHT_EPS_KG, iso_now, validate_positive_kg, validate_size_class

logger = logging.getLogger(__name__)


@dataclass
class TransferItem:
    size_class: int
    quantity: int
    weight_kg: float


@dataclass
class Transfer:
    id: int
    transfer_group: Optional[str]
    from_storage_location_id: int
    from_storage_location_name: str
    to_storage_location_id: int
    to_storage_location_name: str
    size_class: int
    quantity: int
    weight_kg: float
    status: str
    requested_by: Optional[str]
    approved_by: Optional[str]
    approved_at: Optional[str]
    completed_by: Optional[str]
    completed_at: Optional[str]
    notes: Optional[str]
    created_at: str

    @classmethod
    def from_row(cls, r) -> "Transfer":
        return cls(
            id=int(r["id"]),
            transfer_group=r["transfer_group"],
            from_storage_location_id=int(r["from_storage_location_id"]),
            from_storage_location_name=str(r["from_name"]),
            to_storage_location_id=int(r["to_storage_location_id"]),
            to_storage_location_name=str(r["to_name"]),
            size_class=int(r["size_class"]),
            quantity=int(r["quantity"]),
            weight_kg=float(r["weight_kg"]),
            status=str(r["status"]),
            requested_by=r["requested_by"],
            approved_by=r["approved_by"],
            approved_at=r["approved_at"],
            completed_by=r["completed_by"],
            completed_at=r["completed_at"],
            notes=r["notes"],
            created_at=str(r["created_at"]),
        )


_SELECT = """
    SELECT t.*, f.name AS from_name, d.name AS to_name
    FROM transfers t
    JOIN storage_locations f ON f.id = t.from_storage_location_id
    JOIN storage_locations d ON d.id = t.to_storage_location_id
"""


def get_transfer(conn, transfer_id: int) -> Transfer:
    rows = q(conn, _SELECT + " WHERE t.id=?", (int(transfer_id),))
    if not rows:
        raise NotFoundError(f"Transfer {transfer_id} not found.")
    return Transfer.from_row(rows[0])


def list_pending_transfers(conn) -> list[Transfer]:
    return [Transfer.from_row(r) for r in q(conn, _SELECT + " WHERE t.status='pending' ORDER BY t.created_at, t.id")]


def transfer_history(conn, limit: int = 100) -> list[Transfer]:
    rows = q(conn, _SELECT + " ORDER BY t.created_at DESC, t.id DESC LIMIT ?", (int(limit),))
    return [Transfer.from_row(r) for r in rows]


# -------------------------
# Creation
# -------------------------

def _validate_item(item: TransferItem) -> TransferItem:
    size = validate_size_class(item.size_class)
    try:
        qty = int(item.quantity)
    except (TypeError, ValueError):
        raise ValidationError(f"Quantity for size {size} must be a whole number.")
    if qty <= 0:
        raise ValidationError(f"Quantity for size {size} must be > 0.")
    kg = validate_positive_kg(item.weight_kg, f"Transfer weight for size {size}")
    return TransferItem(size_class=size, quantity=qty, weight_kg=kg)


def _validate_route(from_id: int, to_id: int) -> tuple[int, int]:
    try:
        src, dst = int(from_id), int(to_id)
    except (TypeError, ValueError):
        raise ValidationError("Storage location ids must be integers.")
    if src == dst:
        raise ValidationError("Source and destination storage locations must differ.")
    return src, dst


def _check_locations(conn, src: int, dst: int) -> None:
    get_storage_location(conn, src)
    dest = get_storage_location(conn, dst)
    if dest["status"] != "active":
        raise ValidationError(f"Destination {dest['name']} is not active.")


def _check_duplicate(conn, src: int, dst: int, item: TransferItem) -> None:
    rows = q(
        conn,
        """
        SELECT id, weight_kg FROM transfers
        WHERE from_storage_location_id=? AND to_storage_location_id=?
          AND size_class=? AND quantity=? AND status='pending'
        """,
        (src, dst, item.size_class, item.quantity),
    )
    for r in rows:
        if abs(float(r["weight_kg"]) - item.weight_kg) <= WEIGHT_EPS_KG:
            raise DuplicateRequestError(
                f"A pending transfer for size {item.size_class} ({item.quantity} pcs, {item.weight_kg:.2f} kg) "
                f"already exists (transfer {r['id']})."
            )


def _insert(conn, src: int, dst: int, item: TransferItem, *, group, notes, requested_by, created_at) -> int:
    return x(
        conn,
        """
        INSERT INTO transfers (
            transfer_group, from_storage_location_id, to_storage_location_id,
            size_class, quantity, weight_kg, status, requested_by, notes, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?)
        """,
        (group, src, dst, item.size_class, item.quantity, item.weight_kg, requested_by, notes, created_at),
    )


def create_transfer(
    conn,
    *,
    from_storage_location_id: int,
    to_storage_location_id: int,
    size_class: int,
    quantity: int,
    weight_kg: float,
    notes: Optional[str] = None,
    requested_by: Optional[str] = None,
) -> Transfer:
    transfers = create_batch_transfer(
        conn,
        from_storage_location_id=from_storage_location_id,
        to_storage_location_id=to_storage_location_id,
        items=[TransferItem(size_class=size_class, quantity=quantity, weight_kg=weight_kg)],
        notes=notes,
        requested_by=requested_by,
    )
    return transfers[0]


def create_batch_transfer(
    conn,
    *,
    from_storage_location_id: int,
    to_storage_location_id: int,
    items: list[TransferItem],
    notes: Optional[str] = None,
    requested_by: Optional[str] = None,
) -> list[Transfer]:
    """
    Create one pending transfer per size, all or none.
    Any invalid or duplicate item rejects the whole request.
    """
    src, dst = _validate_route(from_storage_location_id, to_storage_location_id)
    clean = [_validate_item(i) for i in items]
    if not clean:
        raise ValidationError("At least one size is required for a transfer.")
    sizes = [i.size_class for i in clean]
    if len(set(sizes)) != len(sizes):
        raise ValidationError("Each size may appear only once in a transfer request.")

    group = uuid.uuid4().hex if len(clean) > 1 else None
    created_at = iso_now()
    with transaction(conn):
        _check_locations(conn, src, dst)
        for item in clean:
            _check_duplicate(conn, src, dst, item)
        ids = [
            _insert(conn, src, dst, item, group=group, notes=notes, requested_by=requested_by, created_at=created_at)
            for item in clean
        ]

    transfers = [get_transfer(conn, i) for i in ids]
    for t in transfers:
        logger.info(
            "Transfer %s requested: size %s, %.3f kg from %s to %s",
            t.id, t.size_class, t.weight_kg, t.from_storage_location_name, t.to_storage_location_name,
        )
        record_event(
            conn,
            action="TRANSFER_CREATE",
            table_name="transfers",
            record_id=t.id,
            new_values=asdict(t),
            user_id=requested_by,
        )
    return transfers


# -------------------------
# Approval / decline / completion
# -------------------------

def _group_members(conn, transfer: Transfer) -> list[Transfer]:
    if not transfer.transfer_group:
        return [transfer]
    rows = q(
        conn,
        _SELECT + " WHERE t.transfer_group=? AND t.status='pending' ORDER BY t.id",
        (transfer.transfer_group,),
    )
    return [Transfer.from_row(r) for r in rows]


def _fit_pieces(t: Transfer, plan: AllocationPlan, lots: list[LedgerLot]) -> AllocationPlan:
    """
    Spread the requested piece count over a weight plan. Lines that empty an
    entry move all of its pieces; the partial line (a greedy plan has at most
    one) takes the rest and must leave at least one piece behind.
    """
    by_id = {lot.entry_id: lot for lot in lots}

    def whole(line) -> bool:
        return line.weight_taken_kg >= by_id[line.entry_id].weight_kg - WEIGHT_EPS_KG

    fixed = sum(by_id[line.entry_id].pieces for line in plan.lines if whole(line))
    partial = [line for line in plan.lines if not whole(line)]
    if partial:
        low, high = fixed + 1, fixed + by_id[partial[0].entry_id].pieces - 1
    else:
        low = high = fixed

    if low > high:
        raise ValidationError(
            f"Transfer {t.id} would split a single-piece entry; adjust the weight to whole entries."
        )
    if not low <= t.quantity <= high:
        span = f"{low} pcs" if low == high else f"{low}-{high} pcs"
        raise ValidationError(
            f"Moving {t.weight_kg:.2f} kg of size {t.size_class} from {t.from_storage_location_name} "
            f"takes {span}; transfer {t.id} asks for {t.quantity} pcs."
        )

    lines = [
        replace(line, quantity_taken=by_id[line.entry_id].pieces if whole(line) else t.quantity - fixed)
        for line in plan.lines
    ]
    return replace(plan, lines=lines)


def _apply_transfer(conn, t: Transfer, approved_by: Optional[str], approved_at: str) -> dict:
    dest = get_storage_location(conn, t.to_storage_location_id)
    if dest["status"] != "active":
        raise ValidationError(f"Destination {dest['name']} is not active.")

    lots = live_lots(conn, size_classes=[t.size_class], storage_location_id=t.from_storage_location_id)
    plan = fifo_allocate(lots, t.weight_kg, by=BY_WEIGHT, size_classes=(t.size_class,))
    if not plan.is_satisfied:
        raise InsufficientStockError(
            f"{t.from_storage_location_name} holds {plan.available:.2f} kg of size {t.size_class}; "
            f"transfer {t.id} needs {t.weight_kg:.2f} kg.",
            shortfall=plan.shortfall,
            shortfalls={t.size_class: plan.shortfall},
        )
    pieces_live = sum(l.pieces for l in lots)
    if t.quantity > pieces_live:
        raise InsufficientStockError(
            f"{t.from_storage_location_name} holds {pieces_live} pcs of size {t.size_class}; "
            f"transfer {t.id} needs {t.quantity} pcs.",
            shortfall=float(t.quantity - pieces_live),
            shortfalls={t.size_class: float(t.quantity - pieces_live)},
        )
    plan = _fit_pieces(t, plan, lots)

    room = float(dest["capacity_kg"]) - live_usage_kg(conn, t.to_storage_location_id)
    if t.weight_kg > room + WEIGHT_EPS_KG:
        raise CapacityExceededError(
            f"{dest['name']} has {max(0.0, room):.2f} kg free; transfer {t.id} needs {t.weight_kg:.2f} kg.",
            required_kg=t.weight_kg,
            available_kg=max(0.0, room),
        )

    apply_plan(conn, plan, movement_type=TRANSFER_OUT, reference_type="transfer", reference_id=t.id)
    new_entries = [
        append_entry(
            conn,
            batch_id=line.batch_id,
            size_class=line.size_class,
            storage_location_id=t.to_storage_location_id,
            pieces=line.quantity_taken,
            weight_kg=line.weight_taken_kg,
            created_at=line.created_at,
            movement_type=TRANSFER_IN,
            reference_type="transfer",
            reference_id=t.id,
            transfer_source_storage_id=t.from_storage_location_id,
            transfer_id=t.id,
        )
        for line in plan.lines
    ]
    x(
        conn,
        "UPDATE transfers SET status='approved', approved_by=?, approved_at=? WHERE id=?",
        (approved_by, approved_at, t.id),
    )
    return {
        "transfer_id": t.id,
        "source_entries": [line.entry_id for line in plan.lines],
        "destination_entries": new_entries,
        "pieces_moved": plan.total_pieces,
        "weight_moved_kg": plan.total_weight_kg,
    }


def approve_transfer(conn, transfer_id: int, approved_by: Optional[str]) -> OperationResult:
    """
    Approve a pending transfer (and every pending member of its group).
    All source decrements and destination credits commit together or not at all.
    """
    approved_at = iso_now()
    try:
        with transaction(conn):
            transfer = get_transfer(conn, transfer_id)
            if transfer.status in ("approved", "completed"):
                return OperationResult.success(
                    f"Transfer {transfer.id} is already {transfer.status}.", value=[transfer], noop=True
                )
            if transfer.status != "pending":
                raise ValidationError(f"Transfer {transfer.id} is {transfer.status}; only pending transfers can be approved.")

            members = _group_members(conn, transfer)
            moved = [_apply_transfer(conn, t, approved_by, approved_at) for t in members]
            refresh_usage(
                conn,
                {t.from_storage_location_id for t in members} | {t.to_storage_location_id for t in members},
            )
    except BusinessRuleError as exc:
        logger.warning("Transfer %s approval rejected: %s", transfer_id, exc)
        return OperationResult.failure(exc)

    approved = [get_transfer(conn, t.id) for t in members]
    for t, info in zip(approved, moved):
        logger.info("Transfer %s approved by %s: %.3f kg moved", t.id, approved_by, info["weight_moved_kg"])
        record_event(
            conn,
            action="TRANSFER_APPROVE",
            table_name="transfers",
            record_id=t.id,
            old_values={"status": "pending"},
            new_values={"status": "approved", **info},
            user_id=approved_by,
        )
    label = f"{len(approved)} transfers" if len(approved) > 1 else f"Transfer {approved[0].id}"
    return OperationResult.success(f"{label} approved.", value=approved, moves=moved)


def decline_transfer(conn, transfer_id: int, approved_by: Optional[str]) -> OperationResult:
    try:
        with transaction(conn):
            transfer = get_transfer(conn, transfer_id)
            if transfer.status == "declined":
                return OperationResult.success(
                    f"Transfer {transfer.id} is already declined.", value=[transfer], noop=True
                )
            if transfer.status != "pending":
                raise ValidationError(f"Transfer {transfer.id} is {transfer.status}; only pending transfers can be declined.")
            members = _group_members(conn, transfer)
            for t in members:
                x(
                    conn,
                    "UPDATE transfers SET status='declined', approved_by=?, approved_at=? WHERE id=?",
                    (approved_by, iso_now(), t.id),
                )
    except BusinessRuleError as exc:
        logger.warning("Transfer %s decline rejected: %s", transfer_id, exc)
        return OperationResult.failure(exc)

    declined = [get_transfer(conn, t.id) for t in members]
    for t in declined:
        logger.info("Transfer %s declined by %s", t.id, approved_by)
        record_event(
            conn,
            action="TRANSFER_DECLINE",
            table_name="transfers",
            record_id=t.id,
            old_values={"status": "pending"},
            new_values={"status": "declined"},
            user_id=approved_by,
        )
    return OperationResult.success(f"{len(declined)} transfer(s) declined.", value=declined)


def complete_transfer(conn, transfer_id: int, completed_by: Optional[str]) -> OperationResult:
    try:
        with transaction(conn):
            transfer = get_transfer(conn, transfer_id)
            if transfer.status == "completed":
                return OperationResult.success(
                    f"Transfer {transfer.id} is already completed.", value=transfer, noop=True
                )
            if transfer.status != "approved":
                raise ValidationError(f"Transfer {transfer.id} is {transfer.status}; only approved transfers can be completed.")
            x(
                conn,
                "UPDATE transfers SET status='completed', completed_by=?, completed_at=? WHERE id=?",
                (completed_by, iso_now(), transfer.id),
            )
    except BusinessRuleError as exc:
        logger.warning("Transfer %s completion rejected: %s", transfer_id, exc)
        return OperationResult.failure(exc)

    record_event(
        conn,
        action="TRANSFER_COMPLETE",
        table_name="transfers",
        record_id=transfer.id,
        old_values={"status": "approved"},
        new_values={"status": "completed"},
        user_id=completed_by,
    )
    return OperationResult.success(f"Transfer {transfer.id} completed.", value=get_transfer(conn, transfer.id))
