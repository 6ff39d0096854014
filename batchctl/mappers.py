"""Explicit field mappings between record types; no reflective copying."""
import json
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from .errors import RecordValidationError
from .models import NotificationMessage

_STATUS_TEXT = {
    "PENDING": "has been received",
    "PROCESSING": "is being prepared",
    "SHIPPED": "has shipped",
    "DELIVERED": "has been delivered",
    "CANCELED": "was canceled",
}


def _money(value: Any) -> str:
    try:
        return str(Decimal(str(value)).quantize(Decimal("0.01")))
    except (InvalidOperation, ValueError) as e:
        raise RecordValidationError(f"invalid amount {value!r}") from e


def order_row_to_notification(row: Dict[str, Any]) -> Optional[NotificationMessage]:
    """
    orders row -> NotificationMessage. Orders in a status nobody is
    notified about map to None (dropped).
    """
    for key in ("id", "user_id", "status", "total_amount"):
        if row.get(key) is None:
            raise RecordValidationError(f"order row missing {key!r}", items=[row])
    status = str(row["status"]).upper()
    text = _STATUS_TEXT.get(status)
    if text is None:
        return None
    amount = _money(row["total_amount"])
    return NotificationMessage(
        order_id=int(row["id"]),
        user_id=int(row["user_id"]),
        type="EMAIL",
        message=f"Your order #{row['id']} ({amount}) {text}.",
        status=status,
        total_amount=amount,
        created_at=str(row["created_at"]) if row.get("created_at") is not None else None,
    )


def notification_to_body(message: NotificationMessage) -> str:
    """NotificationMessage -> queue message body (JSON)."""
    return message.model_dump_json()


def record_to_body(record: Any) -> str:
    """Default serializer for queue delivery: pydantic models or JSON-able values."""
    if isinstance(record, NotificationMessage):
        return notification_to_body(record)
    if hasattr(record, "model_dump_json"):
        return record.model_dump_json()
    return json.dumps(record, default=str, sort_keys=True)
