"""Event envelope normalization and type filtering.

The assistant event bus has shipped more than one envelope convention:
``{type, properties}``, the same object nested under ``payload``/``data``,
and SSE-style ``{event, data}`` pairs. Everything downstream matches on the
normalized ``ObservedEvent.type`` only.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from core.types import ObservedEvent

KNOWN_EVENT_TYPES = frozenset({
    "server.instance.disposed",
    "installation.updated",
    "installation.update-available",
    "lsp.client.diagnostics",
    "lsp.updated",
    "message.updated",
    "message.removed",
    "message.part.updated",
    "message.part.delta",
    "message.part.removed",
    "permission.updated",
    "permission.replied",
    "session.status",
    "session.idle",
    "session.compacted",
    "file.edited",
    "todo.updated",
    "command.executed",
    "session.created",
    "session.updated",
    "session.deleted",
    "session.diff",
    "session.error",
    "file.watcher.updated",
    "vcs.branch.updated",
    "tui.prompt.append",
    "tui.command.execute",
    "tui.toast.show",
    "pty.created",
    "pty.updated",
    "pty.exited",
    "pty.deleted",
    "server.connected",
    "server.heartbeat",
    "permission.asked",
    "question.asked",
    "question.replied",
    "question.rejected",
})

KNOWN_PART_TYPES = frozenset({
    "text",
    "subtask",
    "reasoning",
    "file",
    "tool",
    "step-start",
    "step-finish",
    "snapshot",
    "patch",
    "agent",
    "retry",
    "compaction",
})

# Event types routed to dispatch; everything else is dropped after normalization.
FORWARDED_EVENT_TYPES = frozenset({
    "message.updated",
    "message.removed",
    "message.part.updated",
    "message.part.delta",
    "message.part.removed",
    "session.status",
    "session.idle",
    "session.error",
    "session.deleted",
    "permission.updated",
    "permission.asked",
    "permission.replied",
    "question.asked",
    "question.replied",
    "question.rejected",
    "command.executed",
})


def should_forward(event_type: str) -> bool:
    return event_type in FORWARDED_EVENT_TYPES


def read_string_field(obj: Optional[Mapping[str, Any]], *keys: str) -> Optional[str]:
    """Return the first non-empty string value among keys."""
    if not isinstance(obj, Mapping):
        return None
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _typed(obj: Any) -> Optional[ObservedEvent]:
    if isinstance(obj, Mapping):
        event_type = obj.get("type")
        if isinstance(event_type, str) and event_type:
            props = obj.get("properties")
            return ObservedEvent(
                type=event_type,
                properties=dict(props) if isinstance(props, Mapping) else {},
            )
    return None


def _named(event_name: str, nested: Mapping[str, Any]) -> ObservedEvent:
    typed = _typed(nested)
    if typed is not None:
        return typed
    props = nested.get("properties")
    if not isinstance(props, Mapping):
        props = nested
    return ObservedEvent(type=event_name, properties=dict(props))


def unwrap_observed_event(raw: Any) -> Optional[ObservedEvent]:
    """Normalize an inbound event object, or return None if unrecognized.

    Resolution order:
        1. ``raw["type"]`` is a string: use the object as is.
        2. ``raw["payload"]`` or ``raw["data"]`` carries a string ``type``.
        3. ``raw["event"]`` names the event and ``data``/``payload``/
           ``properties`` carries the body (its own ``properties`` preferred).
    """
    if not isinstance(raw, Mapping):
        return None

    direct = _typed(raw)
    if direct is not None:
        return direct

    for key in ("payload", "data"):
        nested = _typed(raw.get(key))
        if nested is not None:
            return nested

    event_name = raw.get("event")
    if isinstance(event_name, str) and event_name:
        for key in ("data", "payload"):
            nested = raw.get(key)
            if isinstance(nested, Mapping):
                return _named(event_name, nested)
        props = raw.get("properties")
        if isinstance(props, Mapping):
            return ObservedEvent(type=event_name, properties=dict(props))

    return None


def summarize_observed_event(event: ObservedEvent) -> dict[str, Any]:
    """Compact, log-friendly view of an accepted event."""
    props = event.properties or {}
    info = props.get("info") if isinstance(props.get("info"), Mapping) else None
    part = props.get("part") if isinstance(props.get("part"), Mapping) else None
    delta = props.get("delta")

    return {
        "type": event.type or "unknown",
        "session_id": (
            read_string_field(props, "sessionID")
            or read_string_field(info, "sessionID")
            or read_string_field(part, "sessionID")
        ),
        "message_id": (
            read_string_field(info, "id")
            or read_string_field(props, "messageID")
            or read_string_field(part, "messageID")
        ),
        "role": read_string_field(info, "role"),
        "part_type": read_string_field(part, "type") or read_string_field(props, "field"),
        "part_id": read_string_field(part, "id") or read_string_field(props, "partID"),
        "has_delta": isinstance(delta, str) and len(delta) > 0,
        "has_part_metadata": part is not None and isinstance(part.get("metadata"), Mapping),
    }
