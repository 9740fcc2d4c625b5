"""Typed decoding of the calls the in-page observer sends across the bridge."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Union
from urllib.parse import urlsplit

from ..errors import BridgeNotReadyError, SerializationError, UntrackableFieldError


@dataclass(frozen=True)
class InputFocused:
    field_identifier: str
    field_type: str = "text"


@dataclass(frozen=True)
class InputBlurred:
    field_identifier: str


@dataclass(frozen=True)
class InputValueChanged:
    field_identifier: str
    value: str


@dataclass(frozen=True)
class SaveSubmittedValue:
    field_identifier: str
    value: str
    field_type: str = "text"


@dataclass(frozen=True)
class PageUrlChanged:
    url: str


@dataclass(frozen=True)
class FieldCountReported:
    count: int


@dataclass(frozen=True)
class ErrorLogged:
    message: str


BridgeEvent = Union[
    InputFocused,
    InputBlurred,
    InputValueChanged,
    SaveSubmittedValue,
    PageUrlChanged,
    FieldCountReported,
    ErrorLogged,
]

# call name -> (event type, required arg count, optional arg count)
CALLS: dict[str, tuple[type, int, int]] = {
    "inputFocused": (InputFocused, 1, 1),
    "inputBlurred": (InputBlurred, 1, 0),
    "inputValueChanged": (InputValueChanged, 2, 0),
    "saveSubmittedValue": (SaveSubmittedValue, 2, 1),
    "pageUrlChanged": (PageUrlChanged, 1, 0),
    "reportFieldCount": (FieldCountReported, 1, 0),
    "logError": (ErrorLogged, 1, 0),
}

_FIELD_EVENTS = (InputFocused, InputBlurred, InputValueChanged, SaveSubmittedValue)


def _as_text(call_name: str, value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return str(value)
    raise SerializationError(f"{call_name}: expected a string argument, got {type(value).__name__}")


def parse_bridge_call(call_name: Any, args: Any) -> BridgeEvent:
    """Decode one raw bridge call into its typed event.

    Raises SerializationError for unknown calls or malformed arguments and
    UntrackableFieldError when a field event carries no identifier.
    """
    if not isinstance(call_name, str) or call_name not in CALLS:
        raise SerializationError(f"unknown bridge call {call_name!r}")
    if args is None:
        args = []
    if not isinstance(args, (list, tuple)):
        raise SerializationError(f"{call_name}: arguments must be an array")

    event_type, required, optional = CALLS[call_name]
    if not required <= len(args) <= required + optional:
        raise SerializationError(f"{call_name}: expected {required} argument(s), got {len(args)}")

    if event_type is FieldCountReported:
        count = args[0]
        if isinstance(count, bool) or not isinstance(count, (int, float)):
            raise SerializationError(f"{call_name}: count must be a number")
        return FieldCountReported(count=int(count))

    values = [_as_text(call_name, arg) for arg in args]
    if event_type in _FIELD_EVENTS:
        identifier = values[0].strip()
        if not identifier:
            raise UntrackableFieldError(f"{call_name}: field has neither id nor name")
        values[0] = identifier
    if event_type in (InputFocused, SaveSubmittedValue) and len(values) == required + optional:
        values[-1] = values[-1].strip().lower() or "text"
    return event_type(*values)


def url_scope_from_url(url: Optional[str]) -> Optional[str]:
    """Host component of a page URL, lowercased; None when the URL has no host."""
    if not url:
        return None
    try:
        host = urlsplit(url.strip()).hostname
    except ValueError:
        return None
    return host.lower() if host else None


def parse_presence_check(raw: Any) -> tuple[bool, bool]:
    """Decode the presence-check result into (observer_loaded, bridge_loaded)."""
    payload = raw
    if isinstance(raw, (str, bytes)):
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"malformed presence check response: {raw!r}") from exc
    if not isinstance(payload, dict):
        raise SerializationError(f"presence check must be an object, got {type(payload).__name__}")
    observer = payload.get("observer")
    bridge = payload.get("bridge")
    if not isinstance(observer, bool) or not isinstance(bridge, bool):
        raise SerializationError(f"presence check flags missing: {payload!r}")
    return observer, bridge


def ensure_ready(raw: Any) -> None:
    observer, bridge = parse_presence_check(raw)
    if not (observer and bridge):
        raise BridgeNotReadyError(observer=observer, bridge=bridge)


def write_back_succeeded(result: Any) -> bool:
    """setInputValue reports success as a JS boolean; older hosts stringify it."""
    if isinstance(result, bool):
        return result
    if isinstance(result, str):
        return result.strip().strip('"').lower() == "true"
    return False
