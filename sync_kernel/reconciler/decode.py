"""Decoding of named push-channel messages into typed push events."""

from typing import Callable, Dict, Tuple

from sync_kernel.domain.tickets import COMMENT, TEAM, TICKET
from sync_kernel.models.events import (
    CreatedEvent,
    DeletedEvent,
    MergedEvent,
    PushEvent,
    UpdatedEvent,
)


class UnknownEventError(ValueError):
    """The push channel delivered an event name with no decoder."""
    pass


# Envelope fields carried alongside entity fields in a message payload.
_ENVELOPE = ("id", "event_id", "version", "origin_mutation_id")
# Flags meaning "detail content changed server-side".
_DETAIL_FLAGS = ("was_merged_target", "invalidate_html_cache")


def _split(payload: dict) -> Tuple[dict, dict]:
    if "id" not in payload or payload["id"] is None:
        raise ValueError("Push payload has no entity id")
    fields = dict(payload)
    envelope = {name: fields.pop(name) for name in _ENVELOPE if name in fields}
    event = {
        "entity_id": str(envelope["id"]),
        "payload": fields,
    }
    for name in ("event_id", "version", "origin_mutation_id"):
        if envelope.get(name) is not None:
            event[name] = envelope[name] if name == "version" else str(envelope[name])
    return event, fields


def _created(kind: str) -> Callable[[dict], PushEvent]:
    def decode(payload: dict) -> PushEvent:
        event, fields = _split(payload)
        if kind == COMMENT and fields.get("ticket_id") is not None:
            fields["ticket_id"] = str(fields["ticket_id"])
        return CreatedEvent(entity_kind=kind, **event)
    return decode


def _updated(kind: str) -> Callable[[dict], PushEvent]:
    def decode(payload: dict) -> PushEvent:
        event, fields = _split(payload)
        flags = [bool(fields.pop(flag, False)) for flag in _DETAIL_FLAGS]
        invalidate = any(flags)
        merged = fields.pop("merged_ticket_ids", None)
        if merged is not None and not isinstance(merged, list):
            raise ValueError("merged_ticket_ids is not a list")
        if merged:
            return MergedEvent(
                entity_kind=kind,
                merged_ids=[str(loser) for loser in merged],
                **event,
            )
        return UpdatedEvent(entity_kind=kind, invalidate_detail=invalidate, **event)
    return decode


def _deleted(kind: str) -> Callable[[dict], PushEvent]:
    def decode(payload: dict) -> PushEvent:
        event, _ = _split(payload)
        event["payload"] = {}
        return DeletedEvent(entity_kind=kind, **event)
    return decode


DECODERS: Dict[str, Callable[[dict], PushEvent]] = {
    "new_ticket": _created(TICKET),
    "ticket_updated": _updated(TICKET),
    "ticket_deleted": _deleted(TICKET),
    "comment_updated": _created(COMMENT),
    "team_updated": _updated(TEAM),
}


def decode_event(name: str, payload: dict) -> PushEvent:
    """
    Decode one `(event_name, payload)` message from the push channel.

    Raises UnknownEventError for unmapped names and ValueError (including
    pydantic's ValidationError) for malformed payloads.
    """
    decoder = DECODERS.get(name)
    if decoder is None:
        raise UnknownEventError(f"No decoder for push event '{name}'")
    if not isinstance(payload, dict):
        raise ValueError(f"Push event '{name}' payload is not an object")
    try:
        return decoder(payload)
    except (TypeError, KeyError, AttributeError) as e:
        raise ValueError(f"Malformed push event '{name}': {e}") from e
