"""
Operation records, payload markers and wire messages.

This module contains:
1. Data Structures: OperationRecord, ReplayResult and the message TypedDicts
2. Marker helpers: ref/channel/transfer payload shapes
3. Message validation used by the receiving side before dispatch
"""

from __future__ import annotations

import logging
import os
from typing import (
    Any,
    Literal,
    TypedDict,
    Union,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------

OperationKind = Literal["read", "write", "invoke", "instantiate"]
OPERATION_KINDS: frozenset[str] = frozenset({"read", "write", "invoke", "instantiate"})


class OperationRecord(TypedDict, total=False):
    kind: OperationKind
    target_id: str
    property: str
    args: list[Any]
    kwargs: dict[str, Any]
    value: Any
    receiver_id: str | None
    constructed_name: str
    result_id: str


class ReplayResult(TypedDict):
    index: int
    kind: str
    value: Any
    error: str | None


class ReplayMessage(TypedDict):
    type: Literal["replay"]
    operations: list[OperationRecord]


class RefCountMessage(TypedDict):
    type: Literal["refcount"]
    object_id: str
    delta: int


class RegisterCallbackMessage(TypedDict):
    type: Literal["registerCallback"]
    channel_id: str
    name: str


class EvaluateMessage(TypedDict):
    type: Literal["evaluate"]
    object_id: str
    call_id: int


class ProxyGetMessage(TypedDict):
    type: Literal["proxyGet"]
    object_id: str
    property: str
    call_id: int


class CallMessage(TypedDict):
    type: Literal["call"]
    channel_id: str
    args: list[Any]
    kwargs: dict[str, Any]
    call_id: int | None


class ResponseMessage(TypedDict):
    type: Literal["response"]
    call_id: int
    result: Any
    error: str | None


Message = Union[
    ReplayMessage,
    RefCountMessage,
    RegisterCallbackMessage,
    EvaluateMessage,
    ProxyGetMessage,
    CallMessage,
    ResponseMessage,
]

# ---------------------------------------------------------------------------
# Markers
# ---------------------------------------------------------------------------

REF_KEY = "__ref__"
CHANNEL_KEY = "__channel__"
TRANSFER_KEY = "__transfer__"
UNSERIALIZABLE_KEY = "__unserializable__"

PRIMITIVE_TYPES = (str, int, float, bool, type(None), bytes)


def ref_marker(object_id: str) -> dict[str, str]:
    return {REF_KEY: object_id}


def channel_marker(channel_id: str) -> dict[str, str]:
    return {CHANNEL_KEY: channel_id}


def transfer_marker() -> dict[str, bool]:
    return {TRANSFER_KEY: True}


def unserializable_marker(obj: Any) -> dict[str, str]:
    return {UNSERIALIZABLE_KEY: type(obj).__name__}


def _single_key(value: Any, key: str) -> bool:
    return isinstance(value, dict) and len(value) == 1 and key in value


def is_ref_marker(value: Any) -> bool:
    return _single_key(value, REF_KEY) and isinstance(value[REF_KEY], str)


def is_channel_marker(value: Any) -> bool:
    return _single_key(value, CHANNEL_KEY) and isinstance(value[CHANNEL_KEY], str)


def is_transfer_marker(value: Any) -> bool:
    return _single_key(value, TRANSFER_KEY) and value[TRANSFER_KEY] is True


def is_plain_data(value: Any) -> bool:
    """True if *value* is made only of primitives, lists, tuples and str-keyed dicts."""
    if isinstance(value, PRIMITIVE_TYPES):
        return True
    if isinstance(value, (list, tuple)):
        return all(is_plain_data(item) for item in value)
    if isinstance(value, dict):
        return all(isinstance(k, str) and is_plain_data(v) for k, v in value.items())
    return False

# ---------------------------------------------------------------------------
# Debug Logic
# ---------------------------------------------------------------------------

# Verbose per-message logging (set via PYRECORD_DEBUG_MESSAGES=1)
debug_all_messages = bool(os.environ.get("PYRECORD_DEBUG_MESSAGES"))


def debugprint(*args: Any) -> None:
    if debug_all_messages:
        logger.debug(" ".join(str(arg) for arg in args))

# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

# Required fields per message type. A tuple of types means any of them.
_MESSAGE_FIELDS: dict[str, dict[str, Any]] = {
    "replay": {"operations": list},
    "refcount": {"object_id": str, "delta": int},
    "registerCallback": {"channel_id": str},
    "evaluate": {"object_id": str, "call_id": int},
    "proxyGet": {"object_id": str, "property": str, "call_id": int},
    "call": {"channel_id": str, "args": (list, tuple)},
    "response": {"call_id": int},
}

MESSAGE_TYPES: frozenset[str] = frozenset(_MESSAGE_FIELDS)


def validate_message(data: Any) -> str | None:
    """Return a description of what is wrong with *data*, or None if it is well formed."""
    if not isinstance(data, dict):
        return f"message must be a dict, got {type(data).__name__}"
    message_type = data.get("type")
    fields = _MESSAGE_FIELDS.get(message_type)  # type: ignore[arg-type]
    if fields is None:
        return f"unknown message type: {message_type!r}"
    for name, expected in fields.items():
        if name not in data:
            return f"{message_type} message is missing {name!r}"
        value = data[name]
        # bool is an int subclass; a True delta or call id is a bug on the sender.
        if isinstance(value, bool) and expected is int:
            return f"{message_type} message field {name!r} must be int"
        if not isinstance(value, expected):
            return f"{message_type} message field {name!r} has type {type(value).__name__}"
    if message_type == "call" and data.get("call_id") is not None and not isinstance(data["call_id"], int):
        return "call message field 'call_id' must be int or None"
    if message_type == "replay":
        for position, operation in enumerate(data["operations"]):
            if not isinstance(operation, dict) or not isinstance(operation.get("target_id"), str):
                return f"replay operation {position} is malformed"
    return None
