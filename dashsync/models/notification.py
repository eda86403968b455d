"""
Push notification model and wire decoding.
"""

import json
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import Field, ValidationError

from .base import BaseModel
from ..errors import ProtocolError


class NotificationKind(str, Enum):
    """Notification kinds understood by the reconciler."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    BILL_GENERATED = "bill-generated"
    REFRESH_REQUESTED = "refresh-requested"


# Event names broadcast by the dashboard server, mapped onto kinds
WIRE_EVENT_NAMES: Dict[str, NotificationKind] = {
    "transaction-created": NotificationKind.CREATED,
    "transaction-updated": NotificationKind.UPDATED,
    "transaction-deleted": NotificationKind.DELETED,
    "bill-generated": NotificationKind.BILL_GENERATED,
    "dashboard-refresh": NotificationKind.REFRESH_REQUESTED,
}
WIRE_EVENT_NAMES.update({kind.value: kind for kind in NotificationKind})


class WireMessage(BaseModel):
    """Envelope of every message pushed over the realtime channel."""
    event: str = Field(..., min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict, alias="payload")


class NotificationEvent(BaseModel):
    """A decoded server-side change notification."""
    kind: NotificationKind
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def entity_type(self) -> Optional[str]:
        """Record family the change touched ('vehicle', 'scrap'), if given."""
        value = self.payload.get("type")
        return str(value).lower() if value else None

    @classmethod
    def decode(cls, raw: str) -> Optional['NotificationEvent']:
        """Decode a raw text frame.

        Returns:
            The event, or None when the event name is not recognized.

        Raises:
            ProtocolError: if the frame is not a valid message envelope
        """
        try:
            body = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Message is not valid JSON: {e}") from e

        if not isinstance(body, dict):
            raise ProtocolError("Message must be a JSON object")

        try:
            message = WireMessage.model_validate(body)
        except ValidationError as e:
            raise ProtocolError(f"Malformed message envelope: {e.error_count()} error(s)") from e

        kind = WIRE_EVENT_NAMES.get(message.event)
        if kind is None:
            return None
        return cls(kind=kind, payload=message.data)
