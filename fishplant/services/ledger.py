"""
Stock ledger and sorting batches.

A sorting batch distributes one processed lot across size classes into a
storage location. When it completes, each size line becomes a ledger entry.
Entries are never updated: every change in quantity is an appended movement
with signed deltas, and the live balance of an entry is the sum of them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from fishplant.db import q, x, transaction
from fishplant.errors import CapacityExceededError, NotFoundError, ValidationError
from fishplant.services.audit import record_event
from fishplant.services.storage import get_storage_location, live_usage_kg, refresh_usage
from fishplant.utils import (
    WEIGHT_EPS_GRAMS,
    WEIGHT_EPS_KG,
    grams_to_kg,
    iso_now,
    kg_to_grams,
    normalize_iso,
    validate_positive_kg,
    validate_size_class,
)

logger = logging.getLogger(__name__)

BATCH_STATUSES = ("pending", "in_progress", "completed", "failed")

SORTED_IN = "SORTED_IN"
TRANSFER_IN = "TRANSFER_IN"
TRANSFER_OUT = "TRANSFER_OUT"
ORDER_OUT = "ORDER_OUT"
ORDER_RETURN = "ORDER_RETURN"
DISPOSAL = "DISPOSAL"
ADJUSTMENT = "ADJUSTMENT"


@dataclass
class SortedSizeInput:
    size_class: int
    pieces: int
    weight_kg: float


@dataclass(frozen=True)
class LedgerLot:
    """Live view of one ledger entry: what is left of it right now."""

    entry_id: int
    batch_id: int
    batch_number: str
    size_class: int
    storage_location_id: int
    storage_location_name: str
    pieces: int
    weight_kg: float
    created_at: str
    transfer_id: Optional[int] = None
    transfer_source_storage_id: Optional[int] = None

    @property
    def is_transfer(self) -> bool:
        return self.transfer_id is not None


# -------------------------
# Sorting batches
# -------------------------

def _validate_lines(lines: Iterable[SortedSizeInput]) -> list[SortedSizeInput]:
    out: list[SortedSizeInput] = []
    seen: set[int] = set()
    for line in lines:
        size = validate_size_class(line.size_class)
        if size in seen:
            raise ValidationError(f"Size class {size} appears more than once.")
        seen.add(size)
        try:
            pcs = int(line.pieces)
        except (TypeError, ValueError):
            raise ValidationError(f"Pieces for size {size} must be a whole number.")
        if pcs <= 0:
            raise ValidationError(f"Pieces for size {size} must be > 0.")
        kg = validate_positive_kg(line.weight_kg, f"Weight for size {size}")
        out.append(SortedSizeInput(size_class=size, pieces=pcs, weight_kg=kg))
    if not out:
        raise ValidationError("At least one size line is required.")
    return out


def _generate_batch_number(conn, created_at: str) -> str:
    """
    Human-readable, monotonic within a day:
      SB-{YYYYMMDD}-{NNNN}
    """
    ymd = str(created_at)[:10].replace("-", "")
    prefix = f"SB-{ymd}-"
    r = q(conn, "SELECT COUNT(1) AS n FROM sorting_batches WHERE batch_number LIKE ?", (prefix + "%",))
    n = int(r[0]["n"]) if r else 0
    return f"{prefix}{n + 1:04d}"


def create_sorting_batch(
    conn,
    *,
    storage_location_id: int,
    lines: list[SortedSizeInput],
    processing_record_id: Optional[str] = None,
    notes: Optional[str] = None,
    created_at: Optional[str] = None,
) -> int:
    clean = _validate_lines(lines)
    created_at = normalize_iso(created_at, "Batch date") if created_at else iso_now()

    with transaction(conn):
        get_storage_location(conn, storage_location_id)
        batch_number = _generate_batch_number(conn, created_at)
        batch_id = x(
            conn,
            """
            INSERT INTO sorting_batches (
                batch_number, processing_record_id, storage_location_id, status, notes, created_at
            ) VALUES (?, ?, ?, 'pending', ?, ?)
            """,
            (
                batch_number,
                None if processing_record_id is None else str(processing_record_id),
                int(storage_location_id),
                notes,
                created_at,
            ),
        )
        for line in clean:
            x(
                conn,
                """
                INSERT INTO sorting_batch_lines (batch_id, size_class, pieces, weight_kg)
                VALUES (?, ?, ?, ?)
                """,
                (batch_id, line.size_class, line.pieces, line.weight_kg),
            )

    logger.info("Recorded sorting batch %s (%s) with %d size line(s)", batch_id, batch_number, len(clean))
    return batch_id


def get_sorting_batch(conn, batch_id: int):
    rows = q(conn, "SELECT * FROM sorting_batches WHERE id=?", (int(batch_id),))
    if not rows:
        raise NotFoundError(f"Sorting batch {batch_id} not found.")
    return rows[0]


def list_sorting_batches(conn, status: Optional[str] = None):
    if status:
        return q(conn, "SELECT * FROM sorting_batches WHERE status=? ORDER BY id DESC", (status,))
    return q(conn, "SELECT * FROM sorting_batches ORDER BY id DESC")


def batch_lines(conn, batch_id: int):
    return q(
        conn,
        "SELECT * FROM sorting_batch_lines WHERE batch_id=? ORDER BY size_class",
        (int(batch_id),),
    )


def size_distribution(conn, batch_id: int) -> dict[int, float]:
    return {int(r["size_class"]): float(r["weight_kg"]) for r in batch_lines(conn, batch_id)}


def _set_batch_status(conn, batch_id: int, new_status: str, allowed_from: tuple[str, ...]) -> None:
    with transaction(conn):
        batch = get_sorting_batch(conn, batch_id)
        if batch["status"] not in allowed_from:
            raise ValidationError(
                f"Sorting batch {batch['batch_number']} is {batch['status']}; cannot move to {new_status}."
            )
        x(conn, "UPDATE sorting_batches SET status=? WHERE id=?", (new_status, int(batch_id)))


def start_sorting_batch(conn, batch_id: int) -> None:
    _set_batch_status(conn, batch_id, "in_progress", ("pending",))


def fail_sorting_batch(conn, batch_id: int) -> None:
    _set_batch_status(conn, batch_id, "failed", ("pending", "in_progress"))


def complete_sorting_batch(
    conn,
    batch_id: int,
    *,
    completed_at: Optional[str] = None,
    completed_by: Optional[str] = None,
) -> list[int]:
    """
    Finalize a sorting batch and put its size lines on the ledger.

    Checks, in one transaction: batch still open, no other completed batch for
    the same processing record, destination active and with room for the
    whole batch (live usage, not the cached counter).
    """
    completed_at = normalize_iso(completed_at, "Completion time") if completed_at else iso_now()

    with transaction(conn):
        batch = get_sorting_batch(conn, batch_id)
        if batch["status"] == "completed":
            raise ValidationError(f"Sorting batch {batch['batch_number']} is already completed.")
        if batch["status"] == "failed":
            raise ValidationError(f"Sorting batch {batch['batch_number']} has failed and cannot be completed.")

        record_id = batch["processing_record_id"]
        if record_id is not None:
            dup = q(
                conn,
                "SELECT batch_number FROM sorting_batches WHERE processing_record_id=? AND status='completed'",
                (record_id,),
            )
            if dup:
                raise ValidationError(
                    f"Processing record {record_id} already has a completed sorting batch ({dup[0]['batch_number']})."
                )

        loc_id = int(batch["storage_location_id"])
        loc = get_storage_location(conn, loc_id)
        if loc["status"] != "active":
            raise ValidationError(f"Storage location {loc['name']} is not active.")

        lines = batch_lines(conn, batch_id)
        total_kg = sum(float(r["weight_kg"]) for r in lines)
        total_pcs = sum(int(r["pieces"]) for r in lines)
        room = float(loc["capacity_kg"]) - live_usage_kg(conn, loc_id)
        if total_kg > room + WEIGHT_EPS_KG:
            raise CapacityExceededError(
                f"{loc['name']} has {max(0.0, room):.2f} kg free; batch needs {total_kg:.2f} kg.",
                required_kg=total_kg,
                available_kg=max(0.0, room),
            )

        entry_ids = [
            append_entry(
                conn,
                batch_id=int(batch_id),
                size_class=int(r["size_class"]),
                storage_location_id=loc_id,
                pieces=int(r["pieces"]),
                weight_kg=float(r["weight_kg"]),
                created_at=completed_at,
                movement_type=SORTED_IN,
                reference_type="sorting_batch",
                reference_id=int(batch_id),
            )
            for r in lines
        ]

        x(
            conn,
            """
            UPDATE sorting_batches
            SET status='completed', completed_at=?, ready_for_dispatch_count=?
            WHERE id=?
            """,
            (completed_at, total_pcs, int(batch_id)),
        )
        refresh_usage(conn, [loc_id])

    logger.info(
        "Completed sorting batch %s: %d entries, %d pcs, %.3f kg into %s",
        batch["batch_number"], len(entry_ids), total_pcs, total_kg, loc["name"],
    )
    record_event(
        conn,
        action="SORTING_COMPLETE",
        table_name="sorting_batches",
        record_id=batch_id,
        old_values={"status": batch["status"]},
        new_values={"status": "completed", "entries": entry_ids, "total_kg": total_kg},
        user_id=completed_by,
    )
    return entry_ids


# -------------------------
# Ledger primitives
# -------------------------

def append_entry(
    conn,
    *,
    batch_id: int,
    size_class: int,
    storage_location_id: int,
    pieces: int,
    weight_kg: float,
    created_at: str,
    movement_type: str,
    reference_type: str,
    reference_id: int,
    transfer_source_storage_id: Optional[int] = None,
    transfer_id: Optional[int] = None,
) -> int:
    now = iso_now()
    entry_id = x(
        conn,
        """
        INSERT INTO stock_entries (
            batch_id, size_class, storage_location_id,
            initial_pieces, initial_weight_grams,
            created_at, recorded_at, transfer_source_storage_id, transfer_id
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            int(batch_id),
            int(size_class),
            int(storage_location_id),
            int(pieces),
            kg_to_grams(weight_kg),
            str(created_at),
            now,
            transfer_source_storage_id,
            transfer_id,
        ),
    )
    post_movement(
        conn,
        entry_id=entry_id,
        movement_type=movement_type,
        pieces_delta=int(pieces),
        weight_kg_delta=float(weight_kg),
        reference_type=reference_type,
        reference_id=reference_id,
    )
    return entry_id


def post_movement(
    conn,
    *,
    entry_id: int,
    movement_type: str,
    pieces_delta: int,
    weight_kg_delta: float,
    reference_type: Optional[str],
    reference_id: Optional[int],
) -> int:
    return x(
        conn,
        """
        INSERT INTO stock_movements (
            entry_id, movement_type, pieces_delta, weight_grams_delta,
            reference_type, reference_id, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            int(entry_id),
            str(movement_type),
            int(pieces_delta),
            kg_to_grams(weight_kg_delta),
            reference_type,
            None if reference_id is None else int(reference_id),
            iso_now(),
        ),
    )


def _lot_from_row(r) -> LedgerLot:
    return LedgerLot(
        entry_id=int(r["entry_id"]),
        batch_id=int(r["batch_id"]),
        batch_number=str(r["batch_number"]),
        size_class=int(r["size_class"]),
        storage_location_id=int(r["storage_location_id"]),
        storage_location_name=str(r["storage_location_name"]),
        pieces=int(r["pieces"]),
        weight_kg=grams_to_kg(r["weight_grams"]),
        created_at=str(r["created_at"]),
        transfer_id=None if r["transfer_id"] is None else int(r["transfer_id"]),
        transfer_source_storage_id=(
            None if r["transfer_source_storage_id"] is None else int(r["transfer_source_storage_id"])
        ),
    )


_LOTS_SQL = """
    SELECT
      e.id AS entry_id,
      e.batch_id,
      b.batch_number,
      e.size_class,
      e.storage_location_id,
      sl.name AS storage_location_name,
      e.created_at,
      e.transfer_id,
      e.transfer_source_storage_id,
      COALESCE(SUM(m.pieces_delta), 0) AS pieces,
      COALESCE(SUM(m.weight_grams_delta), 0) AS weight_grams
    FROM stock_entries e
    JOIN sorting_batches b ON b.id = e.batch_id
    JOIN storage_locations sl ON sl.id = e.storage_location_id
    LEFT JOIN stock_movements m ON m.entry_id = e.id
    WHERE b.status = 'completed'
"""


def live_lots(
    conn,
    *,
    size_classes: Optional[Iterable[int]] = None,
    storage_location_id: Optional[int] = None,
) -> list[LedgerLot]:
    """
    Live (non-exhausted) entries of completed batches, oldest first.
    Ordering is created_at, then entry id, which is the insert sequence.
    """
    sql = _LOTS_SQL
    params: list = []
    if size_classes is not None:
        sizes = sorted({validate_size_class(s) for s in size_classes})
        if not sizes:
            return []
        sql += f" AND e.size_class IN ({','.join('?' for _ in sizes)})"
        params.extend(sizes)
    if storage_location_id is not None:
        sql += " AND e.storage_location_id = ?"
        params.append(int(storage_location_id))
    sql += """
    GROUP BY e.id
    HAVING pieces > 0 AND weight_grams > ?
    ORDER BY e.created_at ASC, e.id ASC
    """
    params.append(WEIGHT_EPS_GRAMS)
    return [_lot_from_row(r) for r in q(conn, sql, params)]


def get_live_lot(conn, entry_id: int) -> Optional[LedgerLot]:
    rows = q(
        conn,
        _LOTS_SQL + " AND e.id = ? GROUP BY e.id HAVING pieces > 0 AND weight_grams > ?",
        (int(entry_id), WEIGHT_EPS_GRAMS),
    )
    return _lot_from_row(rows[0]) if rows else None


def entry_movements(conn, entry_id: int):
    return q(conn, "SELECT * FROM stock_movements WHERE entry_id=? ORDER BY id", (int(entry_id),))


def net_outflow(conn, *, reference_type: str, reference_id: int):
    """Per-entry quantities currently held out of the ledger by one reference."""
    return q(
        conn,
        """
        SELECT
          e.id AS entry_id,
          e.batch_id,
          b.batch_number,
          e.size_class,
          e.storage_location_id,
          sl.name AS storage_location_name,
          e.created_at,
          -SUM(m.pieces_delta) AS pieces,
          -SUM(m.weight_grams_delta) AS weight_grams
        FROM stock_movements m
        JOIN stock_entries e ON e.id = m.entry_id
        JOIN sorting_batches b ON b.id = e.batch_id
        JOIN storage_locations sl ON sl.id = e.storage_location_id
        WHERE m.reference_type = ? AND m.reference_id = ?
        GROUP BY e.id
        HAVING weight_grams > ?
        ORDER BY e.created_at ASC, e.id ASC
        """,
        (reference_type, int(reference_id), WEIGHT_EPS_GRAMS),
    )
