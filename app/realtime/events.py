"""
Wire events for the trip chat channel.

Every broadcast travels as {"type": "broadcast", "event": <name>, "payload": {...}}.
Payloads may arrive wrapped one level deeper than expected, so inbound data is
always passed through normalize_event() before any field is read.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type, TypeVar

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

BROADCAST = "broadcast"

M = TypeVar("M", bound=BaseModel)

_MAX_UNWRAP_DEPTH = 3


class EventType:
    MESSAGE = "message"
    TYPING = "typing"
    REACTION = "reaction"
    MESSAGE_EDIT = "message_edit"
    MESSAGE_DELETE = "message_delete"
    PING = "ping"
    CONNECTION = "connection"


ROUTED_EVENTS = (
    EventType.MESSAGE,
    EventType.REACTION,
    EventType.MESSAGE_EDIT,
    EventType.MESSAGE_DELETE,
)


def build_envelope(event: str, payload: Any, sender_id: Optional[str] = None) -> Dict[str, Any]:
    body = dict(jsonable_encoder(payload))
    if sender_id:
        body.setdefault("sender_id", sender_id)
    body.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    body["broadcasted"] = True
    return {"type": BROADCAST, "event": event, "payload": body}


def payload_layers(data: Any) -> List[Dict[str, Any]]:
    """The record itself followed by each nested "payload" dict, outermost first"""
    layers = []
    record = data
    while isinstance(record, dict) and len(layers) <= _MAX_UNWRAP_DEPTH:
        layers.append(record)
        record = record.get("payload")
    return layers


def normalize_event(data: Any, model: Type[M], require_identity: bool = True) -> Optional[M]:
    """
    Validate an inbound payload into model, unwrapping nested payloads as needed.

    Each layer is tried in turn, outermost first, and the first one that
    validates wins. An envelope layer that only carries sender_id or timestamp
    therefore never hides the record wrapped inside it. With require_identity,
    layers that have neither an id nor a sender_id are skipped.
    """
    error_count = 0
    for layer in payload_layers(data):
        if require_identity and not layer.get("id") and not layer.get("sender_id"):
            continue
        try:
            return model.model_validate(layer)
        except ValidationError as e:
            error_count = e.error_count()

    if error_count:
        logger.warning(f"Dropping malformed {model.__name__} event: {error_count} validation errors")
    else:
        logger.warning(f"Dropping inbound {model.__name__} event without id or sender_id: {data!r}")
    return None
