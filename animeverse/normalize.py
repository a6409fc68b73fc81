# animeverse/normalize.py
"""
Normalization of values that cross a serialization boundary.

Two kinds of value are unreliable once they have passed through a session,
a token, a stored document or a JSON body:

* the administrator flag, which has been observed as ``True``, ``"true"``,
  ``"false"``, ``1`` and missing, and
* entity identifiers, which are ObjectId hex strings in the document store and
  sequential integers in the in-memory store.

Every place that reads either one goes through this module.
"""
from dataclasses import dataclass
from typing import Any, Union

from bson import ObjectId

def normalize_bool(value: Any) -> bool:
    """
    Collapse any representation of a flag into a strict bool.

    Native bools pass through, strings are true only when they spell "true"
    (case-insensitive, no trimming), everything else uses ordinary truthiness.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)

# ---- Identifiers ----
@dataclass(frozen=True)
class NativeId:
    """ObjectId hex string, the document store's own key format."""
    value: str

@dataclass(frozen=True)
class SequentialId:
    """Integer key as assigned by the in-memory store."""
    value: int

@dataclass(frozen=True)
class InvalidId:
    raw: Any

Identifier = Union[NativeId, SequentialId, InvalidId]

def parse_identifier(raw: Any) -> Identifier:
    """
    Classify a caller-supplied identifier. Rules apply in order:
    ObjectId hex -> NativeId, digit string or int -> SequentialId, else InvalidId.
    """
    if isinstance(raw, bool):
        return InvalidId(raw)
    if isinstance(raw, int):
        return SequentialId(raw) if raw >= 0 else InvalidId(raw)
    if isinstance(raw, ObjectId):
        return NativeId(str(raw))
    if isinstance(raw, str):
        s = raw.strip()
        if ObjectId.is_valid(s):
            return NativeId(s.lower())
        # str.isdigit() accepts non-ASCII digits such as "²"
        if s and s.isascii() and s.isdigit():
            return SequentialId(int(s))
    return InvalidId(raw)
