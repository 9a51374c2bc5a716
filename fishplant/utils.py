from __future__ import annotations

from datetime import datetime, date, timezone
from typing import Any, Mapping

from fishplant.errors import ValidationError

SIZE_CLASSES = tuple(range(0, 11))

# Weight below this is treated as exhausted (float dust from pro-rated takes).
WEIGHT_EPS_KG = 1e-6
WEIGHT_EPS_GRAMS = WEIGHT_EPS_KG * 1000.0


def iso_today() -> str:
    return date.today().isoformat()


def iso_now() -> str:
    # Use UTC ISO timestamps for consistency.
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def parse_iso(ts: str) -> datetime:
    text = str(ts).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_iso(ts: Any, label: str = "Timestamp") -> str:
    """Validate a caller-supplied timestamp and return it as UTC ISO 8601."""
    try:
        dt = parse_iso(ts)
    except ValueError:
        raise ValidationError(f"{label} must be an ISO 8601 timestamp, got {ts!r}.")
    return dt.astimezone(timezone.utc).isoformat()


def days_since(ts: str, *, now: datetime | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    return max(0, (now - parse_iso(ts)).days)


def safe_div(n: float, d: float) -> float:
    return float(n) / float(d) if d else 0.0


def kg_to_grams(kg: float) -> float:
    return float(kg) * 1000.0


def grams_to_kg(grams: float) -> float:
    return float(grams) / 1000.0


def validate_size_class(size_class: Any) -> int:
    try:
        s = int(size_class)
    except (TypeError, ValueError):
        raise ValidationError(f"Size class must be an integer, got {size_class!r}.")
    if isinstance(size_class, float) and not float(size_class).is_integer():
        raise ValidationError(f"Size class must be an integer, got {size_class!r}.")
    if s not in SIZE_CLASSES:
        raise ValidationError(f"Unknown size class {s}. Valid classes are 0-10.")
    return s


def validate_positive_kg(value: Any, label: str = "Weight") -> float:
    try:
        kg = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be a number.")
    if kg <= 0:
        raise ValidationError(f"{label} must be > 0.")
    return kg


def parse_size_map(raw: Mapping[Any, Any] | None, *, label: str = "size quantities") -> dict[int, float]:
    """
    Validate a sizeClass -> kg map at the boundary.
    Keys may arrive as strings (JSON round trip); values must be > 0.
    """
    if not raw:
        return {}
    out: dict[int, float] = {}
    for k, v in raw.items():
        size = validate_size_class(k)
        if size in out:
            raise ValidationError(f"Duplicate size class {size} in {label}.")
        out[size] = validate_positive_kg(v, f"Weight for size {size}")
    return dict(sorted(out.items()))
