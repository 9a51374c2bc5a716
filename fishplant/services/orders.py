"""
Outlet order fulfillment.

State machine:
  pending --confirm--> confirmed --dispatch--> dispatched --complete--> completed
  pending --cancel--> cancelled

Confirmation plans FIFO inside a writer transaction and posts ORDER_OUT
movements for the whole order or for nothing. It also writes the order's
single dispatch record in 'scheduled' status. Dispatch finalizes that same
record, optionally replacing the planned picks with what was actually picked.
"""
from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Optional

import pandas as pd

from fishplant.db import q, x, transaction
from fishplant.errors import (
    BusinessRuleError,
    CapacityExceededError,
    ConcurrencyConflictError,
    InsufficientStockError,
    NotFoundError,
    OperationResult,
    ValidationError,
)
from fishplant.services.allocation import (
    AllocationLine,
    AllocationPlan,
    apply_plan,
    plan_allocation,
    plan_pooled_allocation,
)
from fishplant.services.audit import record_event
from fishplant.services.ledger import (
    ORDER_OUT,
    ORDER_RETURN,
    get_live_lot,
    live_lots,
    net_outflow,
    post_movement,
)
from fishplant.services.storage import get_storage_location, live_usage_kg, refresh_usage
from fishplant.utils import (
    SIZE_CLASSES,
    WEIGHT_EPS_KG,
    grams_to_kg,
    iso_now,
    iso_today,
    parse_size_map,
    validate_positive_kg,
    validate_size_class,
)

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "confirmed", "dispatched", "completed", "cancelled")
ORDER_REFERENCE = "outlet_order"


@dataclass
class PickedItem:
    entry_id: int
    weight_kg: float
    pieces: Optional[int] = None


@dataclass
class OutletOrder:
    id: int
    order_number: str
    outlet_id: int
    outlet_name: str
    order_date: str
    delivery_date: Optional[str]
    requested_sizes: list[int]
    size_quantities: dict[int, float]
    requested_quantity: float
    requested_grade: Optional[str]
    price_per_kg: float
    total_value: float
    status: str
    notes: Optional[str]
    created_by: Optional[str]
    confirmed_by: Optional[str]
    confirmed_at: Optional[str]
    dispatched_at: Optional[str]
    completed_at: Optional[str]
    cancelled_at: Optional[str]
    created_at: str

    @property
    def is_any_size(self) -> bool:
        return not self.size_quantities

    @classmethod
    def from_row(cls, r) -> "OutletOrder":
        return cls(
            id=int(r["id"]),
            order_number=str(r["order_number"]),
            outlet_id=int(r["outlet_id"]),
            outlet_name=str(r["outlet_name"]),
            order_date=str(r["order_date"]),
            delivery_date=r["delivery_date"],
            requested_sizes=[int(s) for s in json.loads(r["requested_sizes"] or "[]")],
            size_quantities={int(k): float(v) for k, v in json.loads(r["size_quantities"] or "{}").items()},
            requested_quantity=float(r["requested_quantity"]),
            requested_grade=r["requested_grade"],
            price_per_kg=float(r["price_per_kg"]),
            total_value=float(r["total_value"]),
            status=str(r["status"]),
            notes=r["notes"],
            created_by=r["created_by"],
            confirmed_by=r["confirmed_by"],
            confirmed_at=r["confirmed_at"],
            dispatched_at=r["dispatched_at"],
            completed_at=r["completed_at"],
            cancelled_at=r["cancelled_at"],
            created_at=str(r["created_at"]),
        )


@dataclass
class DispatchRecord:
    id: int
    outlet_order_id: int
    destination: str
    batch_refs: list[dict]
    size_breakdown: dict[int, float]
    total_weight: float
    total_pieces: int
    total_value: float
    status: str
    notes: Optional[str]
    dispatched_by: Optional[str]
    dispatch_date: Optional[str]
    created_at: str


@dataclass
class SizeDemand:
    size_class: Optional[int]
    pending_kg: float
    available_kg: float

    @property
    def shortfall_kg(self) -> float:
        return round(max(0.0, self.pending_kg - self.available_kg), 6)


# -------------------------
# Outlets
# -------------------------

def create_outlet(conn, *, name: str, location: Optional[str] = None, status: str = "active") -> int:
    name = str(name or "").strip()
    if not name:
        raise ValidationError("Outlet name is required.")
    if q(conn, "SELECT 1 FROM outlets WHERE name=?", (name,)):
        raise ValidationError(f"Outlet {name!r} already exists.")
    return x(conn, "INSERT INTO outlets (name, location, status) VALUES (?, ?, ?)", (name, location, status))


def list_outlets(conn, status: Optional[str] = None):
    if status:
        return q(conn, "SELECT * FROM outlets WHERE status=? ORDER BY name", (status,))
    return q(conn, "SELECT * FROM outlets ORDER BY name")


# -------------------------
# Orders: create / read
# -------------------------

_ORDER_SELECT = """
    SELECT o.*, ot.name AS outlet_name
    FROM outlet_orders o
    JOIN outlets ot ON ot.id = o.outlet_id
"""


def get_order(conn, order_id: int) -> OutletOrder:
    rows = q(conn, _ORDER_SELECT + " WHERE o.id=?", (int(order_id),))
    if not rows:
        raise NotFoundError(f"Order {order_id} not found.")
    return OutletOrder.from_row(rows[0])


def list_orders(conn, status: Optional[str] = None) -> list[OutletOrder]:
    if status:
        rows = q(conn, _ORDER_SELECT + " WHERE o.status=? ORDER BY o.id DESC", (status,))
    else:
        rows = q(conn, _ORDER_SELECT + " ORDER BY o.id DESC")
    return [OutletOrder.from_row(r) for r in rows]


def _generate_order_number(conn, order_date: str) -> str:
    prefix = f"ORD-{str(order_date)[:10].replace('-', '')}-"
    r = q(conn, "SELECT COUNT(1) AS n FROM outlet_orders WHERE order_number LIKE ?", (prefix + "%",))
    n = int(r[0]["n"]) if r else 0
    return f"{prefix}{n + 1:04d}"


def create_order(
    conn,
    *,
    outlet_id: int,
    requested_quantity_kg: Optional[float],
    price_per_kg: float,
    requested_sizes: Iterable[int] = (),
    size_quantities: Optional[dict] = None,
    requested_grade: Optional[str] = None,
    delivery_date: Optional[str] = None,
    notes: Optional[str] = None,
    created_by: Optional[str] = None,
) -> OutletOrder:
    """
    Two modes: with size_quantities each size gets its own weight and the
    total is their sum; without it the order is 'any size' over
    requested_sizes (empty means every size class).
    """
    size_map = parse_size_map(size_quantities, label="size quantities")
    if size_map:
        sizes = list(size_map)
        quantity = round(sum(size_map.values()), 6)
    else:
        sizes = sorted({validate_size_class(s) for s in requested_sizes})
        quantity = validate_positive_kg(requested_quantity_kg, "Requested quantity")
    try:
        price = float(price_per_kg)
    except (TypeError, ValueError):
        raise ValidationError("Price per kg must be a number.")
    if price < 0:
        raise ValidationError("Price per kg must not be negative.")

    order_date = iso_today()
    with transaction(conn):
        outlet = q(conn, "SELECT * FROM outlets WHERE id=?", (int(outlet_id),))
        if not outlet:
            raise NotFoundError(f"Outlet {outlet_id} not found.")
        if outlet[0]["status"] != "active":
            raise ValidationError(f"Outlet {outlet[0]['name']} is not active.")

        order_id = x(
            conn,
            """
            INSERT INTO outlet_orders (
                order_number, outlet_id, order_date, delivery_date,
                requested_sizes, size_quantities, requested_quantity, requested_grade,
                price_per_kg, total_value, status, notes, created_by, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?)
            """,
            (
                _generate_order_number(conn, order_date),
                int(outlet_id),
                order_date,
                delivery_date,
                json.dumps(sizes),
                json.dumps({str(k): v for k, v in size_map.items()}),
                quantity,
                requested_grade,
                price,
                round(quantity * price, 2),
                notes,
                created_by,
                iso_now(),
            ),
        )

    order = get_order(conn, order_id)
    logger.info("Order %s created for %s: %.3f kg", order.order_number, order.outlet_name, order.requested_quantity)
    record_event(
        conn,
        action="ORDER_CREATE",
        table_name="outlet_orders",
        record_id=order.id,
        new_values={"status": "pending", "requested_quantity": quantity, "sizes": sizes},
        user_id=created_by,
    )
    return order


# -------------------------
# Allocations and the dispatch record
# -------------------------

def _plan_order(conn, order: OutletOrder) -> list[AllocationPlan]:
    if order.size_quantities:
        return [plan_allocation(conn, size, kg) for size, kg in order.size_quantities.items()]
    # 'Any size' is one pooled requirement, planned against what is live now.
    return [plan_pooled_allocation(conn, order.requested_sizes, order.requested_quantity)]


def preview_order_plan(conn, order_id: int) -> list[AllocationPlan]:
    """Advisory plan for display; confirm_order re-plans inside its own transaction."""
    with transaction(conn, immediate=False):
        return _plan_order(conn, get_order(conn, order_id))


def order_allocations(conn, order_id: int) -> list[AllocationLine]:
    """Stock currently held out of the ledger by this order, oldest entry first."""
    return [
        AllocationLine(
            entry_id=int(r["entry_id"]),
            batch_id=int(r["batch_id"]),
            batch_number=str(r["batch_number"]),
            size_class=int(r["size_class"]),
            storage_location_id=int(r["storage_location_id"]),
            storage_location_name=str(r["storage_location_name"]),
            created_at=str(r["created_at"]),
            quantity_taken=int(r["pieces"]),
            weight_taken_kg=round(grams_to_kg(r["weight_grams"]), 6),
        )
        for r in net_outflow(conn, reference_type=ORDER_REFERENCE, reference_id=order_id)
    ]


def _shortfall_error(order: OutletOrder, plans: list[AllocationPlan]) -> InsufficientStockError:
    short = [p for p in plans if not p.is_satisfied]
    if order.is_any_size:
        p = short[0]
        return InsufficientStockError(
            f"Order {order.order_number} is short {p.shortfall:.2f} kg "
            f"({p.available:.2f} kg live of {p.required:.2f} kg requested, any size).",
            shortfall=p.shortfall,
        )
    per_size = {p.size_class: p.shortfall for p in short}
    detail = ", ".join(f"size {s}: {kg:.2f} kg" for s, kg in per_size.items())
    return InsufficientStockError(
        f"Order {order.order_number} cannot be confirmed; short {detail}.",
        shortfall=round(sum(per_size.values()), 6),
        shortfalls=per_size,
    )


def _write_dispatch_record(
    conn,
    order: OutletOrder,
    lines: list[AllocationLine],
    *,
    status: str,
    dispatched_by: Optional[str] = None,
    dispatch_date: Optional[str] = None,
) -> None:
    breakdown: dict[int, float] = defaultdict(float)
    for line in lines:
        breakdown[line.size_class] += line.weight_taken_kg
    refs = [
        {
            "entry_id": line.entry_id,
            "batch_id": line.batch_id,
            "batch_number": line.batch_number,
            "size_class": line.size_class,
            "storage_location": line.storage_location_name,
            "pieces": line.quantity_taken,
            "weight_kg": line.weight_taken_kg,
        }
        for line in lines
    ]
    total_kg = round(sum(line.weight_taken_kg for line in lines), 6)
    values = (
        order.outlet_name,
        json.dumps(refs),
        json.dumps({str(k): round(v, 6) for k, v in sorted(breakdown.items())}),
        total_kg,
        sum(line.quantity_taken for line in lines),
        round(total_kg * order.price_per_kg, 2),
        status,
        dispatched_by,
        dispatch_date,
    )

    existing = q(conn, "SELECT id FROM dispatch_records WHERE outlet_order_id=?", (order.id,))
    if existing:
        x(
            conn,
            """
            UPDATE dispatch_records
            SET destination=?, batch_refs=?, size_breakdown=?, total_weight=?, total_pieces=?,
                total_value=?, status=?, dispatched_by=?, dispatch_date=?
            WHERE id=?
            """,
            values + (int(existing[0]["id"]),),
        )
    else:
        x(
            conn,
            """
            INSERT INTO dispatch_records (
                destination, batch_refs, size_breakdown, total_weight, total_pieces,
                total_value, status, dispatched_by, dispatch_date, outlet_order_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            values + (order.id, iso_now()),
        )


def get_dispatch_record(conn, order_id: int) -> Optional[DispatchRecord]:
    rows = q(conn, "SELECT * FROM dispatch_records WHERE outlet_order_id=?", (int(order_id),))
    if not rows:
        return None
    r = rows[0]
    return DispatchRecord(
        id=int(r["id"]),
        outlet_order_id=int(r["outlet_order_id"]),
        destination=str(r["destination"]),
        batch_refs=json.loads(r["batch_refs"] or "[]"),
        size_breakdown={int(k): float(v) for k, v in json.loads(r["size_breakdown"] or "{}").items()},
        total_weight=float(r["total_weight"]),
        total_pieces=int(r["total_pieces"]),
        total_value=float(r["total_value"]),
        status=str(r["status"]),
        notes=r["notes"],
        dispatched_by=r["dispatched_by"],
        dispatch_date=r["dispatch_date"],
        created_at=str(r["created_at"]),
    )


# -------------------------
# Confirm
# -------------------------

def _confirm_once(conn, order_id: int, confirmed_by: Optional[str]):
    with transaction(conn):
        order = get_order(conn, order_id)
        if order.status in ("confirmed", "dispatched", "completed"):
            return order, None
        if order.status != "pending":
            raise ValidationError(f"Order {order.order_number} is {order.status}; only pending orders can be confirmed.")

        plans = _plan_order(conn, order)
        if any(not p.is_satisfied for p in plans):
            raise _shortfall_error(order, plans)

        for plan in plans:
            apply_plan(conn, plan, movement_type=ORDER_OUT, reference_type=ORDER_REFERENCE, reference_id=order.id)
        x(
            conn,
            "UPDATE outlet_orders SET status='confirmed', confirmed_by=?, confirmed_at=? WHERE id=?",
            (confirmed_by, iso_now(), order.id),
        )
        refresh_usage(conn, set().union(*(p.touched_locations() for p in plans)))
        _write_dispatch_record(conn, order, [line for p in plans for line in p.lines], status="scheduled")
    return order, plans


def confirm_order(conn, order_id: int, confirmed_by: Optional[str] = None) -> OperationResult:
    """
    Allocate FIFO stock for every requested size and deduct it, all or nothing.
    Confirming an order that is already past 'pending' is a no-op.
    """
    for attempt in (1, 2):
        try:
            order, plans = _confirm_once(conn, order_id, confirmed_by)
            break
        except ConcurrencyConflictError as exc:
            if attempt == 2:
                logger.warning("Order %s confirmation conflicted twice: %s", order_id, exc)
                return OperationResult.failure(exc)
            logger.warning("Order %s confirmation conflicted, re-planning: %s", order_id, exc)
        except BusinessRuleError as exc:
            logger.warning("Order %s confirmation rejected: %s", order_id, exc)
            return OperationResult.failure(exc)

    if plans is None:
        return OperationResult.success(
            f"Order {order.order_number} is already {order.status}.", value=order, noop=True
        )

    confirmed = get_order(conn, order.id)
    weight_by_size: dict[int, float] = defaultdict(float)
    for plan in plans:
        for size, kg in plan.weight_by_size().items():
            weight_by_size[size] += kg
    logger.info(
        "Order %s confirmed by %s: %.3f kg from %d entries",
        confirmed.order_number, confirmed_by,
        sum(p.total_weight_kg for p in plans), sum(len(p.lines) for p in plans),
    )
    record_event(
        conn,
        action="ORDER_CONFIRM",
        table_name="outlet_orders",
        record_id=confirmed.id,
        old_values={"status": "pending"},
        new_values={"status": "confirmed", "weight_by_size": dict(weight_by_size)},
        user_id=confirmed_by,
    )
    return OperationResult.success(f"Order {confirmed.order_number} confirmed.", value=confirmed, plans=plans)


# -------------------------
# Dispatch
# -------------------------

def _validate_picks(picked_items: Iterable[PickedItem]) -> list[PickedItem]:
    out: list[PickedItem] = []
    seen: set[int] = set()
    for item in picked_items:
        try:
            entry_id = int(item.entry_id)
        except (TypeError, ValueError):
            raise ValidationError("Picked entry id must be an integer.")
        if entry_id in seen:
            raise ValidationError(f"Entry {entry_id} is picked more than once.")
        seen.add(entry_id)
        kg = validate_positive_kg(item.weight_kg, f"Picked weight for entry {entry_id}")
        pieces = None
        if item.pieces is not None:
            try:
                pieces = int(item.pieces)
            except (TypeError, ValueError):
                raise ValidationError(f"Picked pieces for entry {entry_id} must be a whole number.")
            if pieces < 0:
                raise ValidationError(f"Picked pieces for entry {entry_id} must not be negative.")
        out.append(PickedItem(entry_id=entry_id, weight_kg=kg, pieces=pieces))
    if not out:
        raise ValidationError("At least one picked item is required.")
    return out


def _post_picks(conn, order: OutletOrder, picks: list[PickedItem]) -> set[int]:
    """
    Put the planned stock back and deduct the picks. Rooms that got stock back
    must still fit it once the picks are out.
    """
    returned: dict[int, float] = defaultdict(float)
    for row in net_outflow(conn, reference_type=ORDER_REFERENCE, reference_id=order.id):
        kg = grams_to_kg(row["weight_grams"])
        post_movement(
            conn,
            entry_id=int(row["entry_id"]),
            movement_type=ORDER_RETURN,
            pieces_delta=int(row["pieces"]),
            weight_kg_delta=kg,
            reference_type=ORDER_REFERENCE,
            reference_id=order.id,
        )
        returned[int(row["storage_location_id"])] += kg
    touched = set(returned)

    allowed = set(order.size_quantities) or set(order.requested_sizes) or set(SIZE_CLASSES)
    for item in picks:
        lot = get_live_lot(conn, item.entry_id)
        if lot is None:
            raise InsufficientStockError(f"Entry {item.entry_id} has no live stock to pick.", shortfall=item.weight_kg)
        if lot.size_class not in allowed:
            raise ValidationError(
                f"Entry {item.entry_id} is size {lot.size_class}, which order {order.order_number} did not request."
            )
        if item.weight_kg > lot.weight_kg + WEIGHT_EPS_KG:
            raise InsufficientStockError(
                f"Entry {item.entry_id} holds {lot.weight_kg:.3f} kg; {item.weight_kg:.3f} kg picked.",
                shortfall=round(item.weight_kg - lot.weight_kg, 6),
                shortfalls={lot.size_class: round(item.weight_kg - lot.weight_kg, 6)},
            )
        pieces = item.pieces
        if pieces is None:
            if item.weight_kg >= lot.weight_kg - WEIGHT_EPS_KG:
                pieces = lot.pieces
            elif lot.pieces >= 2:
                pieces = min(lot.pieces - 1, max(1, int(round(lot.pieces * item.weight_kg / lot.weight_kg))))
            else:
                pieces = 0
        if pieces > lot.pieces:
            raise InsufficientStockError(
                f"Entry {item.entry_id} holds {lot.pieces} pcs; {pieces} pcs picked.",
                shortfall=float(pieces - lot.pieces),
            )
        kg = min(item.weight_kg, lot.weight_kg)
        kg_left = lot.weight_kg - kg
        if pieces == lot.pieces and kg_left > WEIGHT_EPS_KG:
            raise ValidationError(
                f"Picking all {pieces} pcs of entry {item.entry_id} would leave {kg_left:.3f} kg with no pieces."
            )
        if pieces < lot.pieces and kg_left <= WEIGHT_EPS_KG:
            raise ValidationError(
                f"Picking all {lot.weight_kg:.3f} kg of entry {item.entry_id} would leave "
                f"{lot.pieces - pieces} pcs with no weight."
            )
        post_movement(
            conn,
            entry_id=lot.entry_id,
            movement_type=ORDER_OUT,
            pieces_delta=-pieces,
            weight_kg_delta=-kg,
            reference_type=ORDER_REFERENCE,
            reference_id=order.id,
        )
        touched.add(lot.storage_location_id)

    for loc_id, kg_back in sorted(returned.items()):
        loc = get_storage_location(conn, loc_id)
        capacity = float(loc["capacity_kg"])
        used = live_usage_kg(conn, loc_id)
        if used > capacity + WEIGHT_EPS_KG:
            raise CapacityExceededError(
                f"{loc['name']} would hold {used:.2f} kg of {capacity:.2f} kg once order "
                f"{order.order_number}'s planned stock is put back.",
                required_kg=kg_back,
                available_kg=max(0.0, capacity - (used - kg_back)),
            )
    return touched


def dispatch_order(
    conn,
    order_id: int,
    picked_items: Optional[Iterable[PickedItem]] = None,
    dispatched_by: Optional[str] = None,
) -> OperationResult:
    """
    Finalize a confirmed order. Without picked_items the confirmed allocation
    ships as planned; with them the planned stock goes back to the ledger and
    the picks are deducted instead, in the same transaction.
    """
    try:
        picks = _validate_picks(picked_items) if picked_items is not None else None
        with transaction(conn):
            order = get_order(conn, order_id)
            if order.status in ("dispatched", "completed"):
                return OperationResult.success(
                    f"Order {order.order_number} is already {order.status}.", value=order, noop=True
                )
            if order.status != "confirmed":
                raise ValidationError(
                    f"Order {order.order_number} is {order.status}; only confirmed orders can be dispatched."
                )

            if picks is not None:
                refresh_usage(conn, _post_picks(conn, order, picks))

            lines = order_allocations(conn, order.id)
            now = iso_now()
            _write_dispatch_record(
                conn, order, lines, status="dispatched", dispatched_by=dispatched_by, dispatch_date=now
            )
            x(conn, "UPDATE outlet_orders SET status='dispatched', dispatched_at=? WHERE id=?", (now, order.id))

            pieces_by_batch: dict[int, int] = defaultdict(int)
            for line in lines:
                pieces_by_batch[line.batch_id] += line.quantity_taken
            for batch_id, pieces in pieces_by_batch.items():
                x(
                    conn,
                    """
                    UPDATE sorting_batches
                    SET ready_for_dispatch_count = MAX(0, ready_for_dispatch_count - ?)
                    WHERE id=?
                    """,
                    (pieces, batch_id),
                )
    except BusinessRuleError as exc:
        logger.warning("Order %s dispatch rejected: %s", order_id, exc)
        return OperationResult.failure(exc)

    dispatched = get_order(conn, order.id)
    record = get_dispatch_record(conn, order.id)
    logger.info(
        "Order %s dispatched by %s: %.3f kg (%s)",
        dispatched.order_number, dispatched_by, record.total_weight, "picked" if picks else "as planned",
    )
    record_event(
        conn,
        action="ORDER_DISPATCH",
        table_name="outlet_orders",
        record_id=dispatched.id,
        old_values={"status": "confirmed"},
        new_values={
            "status": "dispatched",
            "total_weight": record.total_weight,
            "manual_pick": picks is not None,
        },
        user_id=dispatched_by,
    )
    return OperationResult.success(f"Order {dispatched.order_number} dispatched.", value=dispatched, record=record)


# -------------------------
# Cancel / complete
# -------------------------

def _transition(conn, order_id: int, *, to_status: str, from_status: str, stamp_column: str):
    with transaction(conn):
        order = get_order(conn, order_id)
        if order.status == to_status:
            return order, True
        if order.status != from_status:
            raise ValidationError(
                f"Order {order.order_number} is {order.status}; only {from_status} orders can be {to_status}."
            )
        x(conn, f"UPDATE outlet_orders SET status=?, {stamp_column}=? WHERE id=?", (to_status, iso_now(), order.id))
    return order, False


def cancel_order(conn, order_id: int, cancelled_by: Optional[str] = None, reason: Optional[str] = None) -> OperationResult:
    try:
        order, noop = _transition(conn, order_id, to_status="cancelled", from_status="pending", stamp_column="cancelled_at")
    except BusinessRuleError as exc:
        logger.warning("Order %s cancel rejected: %s", order_id, exc)
        return OperationResult.failure(exc)
    if noop:
        return OperationResult.success(f"Order {order.order_number} is already cancelled.", value=order, noop=True)

    logger.info("Order %s cancelled by %s", order.order_number, cancelled_by)
    record_event(
        conn,
        action="ORDER_CANCEL",
        table_name="outlet_orders",
        record_id=order.id,
        old_values={"status": "pending"},
        new_values={"status": "cancelled", "reason": reason},
        user_id=cancelled_by,
    )
    return OperationResult.success(f"Order {order.order_number} cancelled.", value=get_order(conn, order.id))


def complete_order(conn, order_id: int, completed_by: Optional[str] = None) -> OperationResult:
    try:
        order, noop = _transition(conn, order_id, to_status="completed", from_status="dispatched", stamp_column="completed_at")
    except BusinessRuleError as exc:
        logger.warning("Order %s completion rejected: %s", order_id, exc)
        return OperationResult.failure(exc)
    if noop:
        return OperationResult.success(f"Order {order.order_number} is already completed.", value=order, noop=True)

    record_event(
        conn,
        action="ORDER_COMPLETE",
        table_name="outlet_orders",
        record_id=order.id,
        old_values={"status": "dispatched"},
        new_values={"status": "completed"},
        user_id=completed_by,
    )
    return OperationResult.success(f"Order {order.order_number} completed.", value=get_order(conn, order.id))


# -------------------------
# Demand vs. stock
# -------------------------

def pending_demand_by_size(conn) -> list[SizeDemand]:
    """
    Requested weight of pending orders per size next to live stock.
    'Any size' demand is reported once with size_class=None against the live
    total of the sizes those orders accept.
    """
    with transaction(conn, immediate=False):
        orders = list_orders(conn, status="pending")
        lots = live_lots(conn)

    live: dict[int, float] = defaultdict(float)
    for lot in lots:
        live[lot.size_class] += lot.weight_kg

    demand: dict[int, float] = defaultdict(float)
    any_kg = 0.0
    any_sizes: set[int] = set()
    for order in orders:
        if order.size_quantities:
            for size, kg in order.size_quantities.items():
                demand[size] += kg
        else:
            any_kg += order.requested_quantity
            any_sizes |= set(order.requested_sizes) or set(SIZE_CLASSES)

    out = [
        SizeDemand(size_class=size, pending_kg=round(kg, 6), available_kg=round(live.get(size, 0.0), 6))
        for size, kg in sorted(demand.items())
    ]
    if any_kg > 0:
        out.append(
            SizeDemand(
                size_class=None,
                pending_kg=round(any_kg, 6),
                available_kg=round(sum(live.get(s, 0.0) for s in any_sizes), 6),
            )
        )
    return out


def demand_frame(rows: list[SizeDemand]) -> pd.DataFrame:
    records = [
        {
            "size_class": "any" if r.size_class is None else str(r.size_class),
            "pending_kg": round(r.pending_kg, 3),
            "available_kg": round(r.available_kg, 3),
            "shortfall_kg": round(r.shortfall_kg, 3),
        }
        for r in rows
    ]
    return pd.DataFrame(records, columns=["size_class", "pending_kg", "available_kg", "shortfall_kg"])


def orders_frame(orders: list[OutletOrder]) -> pd.DataFrame:
    records = [
        {
            "id": o.id,
            "order_number": o.order_number,
            "outlet": o.outlet_name,
            "order_date": o.order_date,
            "sizes": "any" if o.is_any_size and not o.requested_sizes else ", ".join(
                str(s) for s in (o.size_quantities or o.requested_sizes)
            ),
            "requested_kg": round(o.requested_quantity, 3),
            "price_per_kg": o.price_per_kg,
            "total_value": o.total_value,
            "status": o.status,
        }
        for o in orders
    ]
    return pd.DataFrame(
        records,
        columns=["id", "order_number", "outlet", "order_date", "sizes", "requested_kg", "price_per_kg", "total_value", "status"],
    )
