from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fishplant.db import x
from fishplant.errors import DataStoreError
from fishplant.utils import iso_now

logger = logging.getLogger(__name__)


def _encode(values: Any) -> Optional[str]:
    if values is None:
        return None
    return json.dumps(values, default=str, sort_keys=True)


def record_event(
    conn,
    *,
    action: str,
    table_name: str,
    record_id: Any = None,
    old_values: Any = None,
    new_values: Any = None,
    user_id: Optional[str] = None,
) -> bool:
    """
    Best-effort audit write. Call after the business transaction has committed;
    a failure here is logged and reported as False, never raised.
    """
    try:
        x(
            conn,
            """
            INSERT INTO audit_logs (user_id, action, table_name, record_id, old_values, new_values, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                str(action),
                str(table_name),
                None if record_id is None else str(record_id),
                _encode(old_values),
                _encode(new_values),
                iso_now(),
            ),
        )
    except (DataStoreError, TypeError, ValueError) as exc:
        logger.warning("Failed to log audit event %s on %s/%s: %s", action, table_name, record_id, exc)
        return False
    return True
