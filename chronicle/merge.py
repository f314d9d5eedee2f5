"""State merger: folds an untrusted delta into the authoritative game state.

Which rule applies to a key is data, not code: ``TOP_LEVEL_POLICIES`` and
``CHARACTER_POLICIES`` map field names to a ``Policy``. Keys not listed use
the generic rules (``{added, removed}`` objects are set operations, plain
dicts shallow-merge one level deep, everything else is replaced).

Delta shapes accepted for list fields:

    {"inventory": ["Rope"]}                                 plain array
    {"inventory": {"added": ["Rope"], "removed": ["Torch"]}}

``merge_state`` never raises on shape mismatches. It logs a warning and
ignores a wrong-shaped write to any policy-protected field; unlisted keys
fall back to direct assignment. Trusted deltas may also remove keyed records
and reshape protected containers.
"""

from __future__ import annotations

import copy
import json
import logging
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Policy(Enum):
    IMMUTABLE_ADDITIVE = "immutable_additive"   # grows only, `removed` ignored
    PROTECTED_ADDITIVE = "protected_additive"   # explicit add/remove, never replaced
    IDENTITY = "identity"                       # write-once
    REGISTRY = "registry"                       # keyed upsert, entries never deleted
    KEYED_LIST = "keyed_list"                   # list of records upserted by id
    NESTED = "nested"                           # recurse with CHARACTER_POLICIES
    ENGINE_OWNED = "engine_owned"               # writable only by trusted callers
    SHALLOW_MERGE = "shallow_merge"
    REPLACE = "replace"


TOP_LEVEL_POLICIES: dict[str, Policy] = {
    "abilities": Policy.IMMUTABLE_ADDITIVE,
    "spells": Policy.IMMUTABLE_ADDITIVE,
    "essences": Policy.IMMUTABLE_ADDITIVE,
    "inventory": Policy.PROTECTED_ADDITIVE,
    "partyMembers": Policy.PROTECTED_ADDITIVE,
    "keyNpcs": Policy.REGISTRY,
    "questLog": Policy.KEYED_LIST,
    "suggestedQuests": Policy.KEYED_LIST,
    "character": Policy.NESTED,
    "fateEngine": Policy.ENGINE_OWNED,
}

CHARACTER_POLICIES: dict[str, Policy] = {
    "name": Policy.IDENTITY,
    "rank": Policy.IDENTITY,
    "class": Policy.IDENTITY,
    "essences": Policy.IMMUTABLE_ADDITIVE,
    "abilities": Policy.IMMUTABLE_ADDITIVE,
    "spells": Policy.IMMUTABLE_ADDITIVE,
    "inventory": Policy.PROTECTED_ADDITIVE,
}

REGISTRY_IDENTITY_FIELDS = ("name", "role")

# Untrusted inserts into the key may not reuse an id still listed under the
# value key: suggestions reach the quest log only through accept_quest.
HELD_IDS: dict[str, str] = {"questLog": "suggestedQuests"}


# ---------------------------------------------------------------------------
# Item identity and set operations
# ---------------------------------------------------------------------------

def _identity(item: Any) -> Any:
    """Items compare by value; dict items by their name or id."""
    if isinstance(item, dict):
        for key in ("name", "id"):
            if isinstance(item.get(key), str):
                return item[key]
        return json.dumps(item, sort_keys=True, default=str)
    if isinstance(item, list):
        return json.dumps(item, default=str)
    return item


def _is_set_op(value: Any) -> bool:
    return isinstance(value, dict) and ("added" in value or "removed" in value)


def _as_items(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def union(current: list[Any], added: list[Any]) -> list[Any]:
    """Order-preserving union. Existing entries win over duplicates."""
    result = list(current)
    seen = {_identity(i) for i in result}
    for item in added:
        key = _identity(item)
        if key not in seen:
            seen.add(key)
            result.append(item)
    return result


def difference(current: list[Any], removed: list[Any]) -> list[Any]:
    drop = {_identity(i) for i in removed}
    return [i for i in current if _identity(i) not in drop]


def _current_list(value: Any, path: str) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    logger.warning("merge: %s held a non-list value %r, treating it as a single entry", path, value)
    return [value]


# ---------------------------------------------------------------------------
# Per-policy handlers
# ---------------------------------------------------------------------------

def _merge_immutable(current: Any, value: Any, path: str) -> list[Any]:
    base = _current_list(current, path)
    if _is_set_op(value):
        if value.get("removed"):
            logger.warning("merge: ignoring removal from immutable field %s: %r", path, value["removed"])
        return union(base, _as_items(value.get("added")))
    if isinstance(value, list):
        return union(base, value)
    if isinstance(value, str):
        logger.warning("merge: bare string for immutable field %s, adding it", path)
        return union(base, [value])
    logger.warning("merge: ignoring %r for immutable field %s", value, path)
    return base


def _merge_protected(current: Any, value: Any, path: str) -> list[Any]:
    base = _current_list(current, path)
    if _is_set_op(value):
        return difference(
            union(base, _as_items(value.get("added"))),
            _as_items(value.get("removed")),
        )
    if isinstance(value, list):
        logger.warning("merge: plain array for protected field %s, treating as add-only", path)
        return union(base, value)
    if isinstance(value, str):
        logger.warning("merge: bare string for protected field %s, adding it", path)
        return union(base, [value])
    logger.warning("merge: ignoring %r for protected field %s", value, path)
    return base


def _merge_identity(current: Any, value: Any, path: str) -> Any:
    if current in (None, "", []):
        return value
    if value != current:
        logger.warning("merge: %s is write-once, keeping %r over %r", path, current, value)
    return current


def _refuse_shape(current: Any, value: Any, path: str, expected: str, trusted: bool) -> Any:
    if trusted:
        logger.warning("merge: %s expects %s, got %r; assigning directly", path, expected, value)
        return value
    logger.warning("merge: ignoring %r for %s, expected %s", value, path, expected)
    return current


def _merge_registry(current: Any, value: Any, path: str, trusted: bool) -> Any:
    if not isinstance(value, dict):
        return _refuse_shape(current, value, path, "a mapping", trusted)
    result = dict(current) if isinstance(current, dict) else {}
    for key, entry in value.items():
        existing = result.get(key)
        if isinstance(existing, dict) and isinstance(entry, dict):
            merged = {**existing, **entry}
            for field in REGISTRY_IDENTITY_FIELDS:
                if existing.get(field):
                    merged[field] = existing[field]
            result[key] = merged
        elif entry is None:
            logger.warning("merge: refusing to delete %s.%s", path, key)
        else:
            result[key] = entry
    return result


def _record_id(record: Any) -> Any:
    if isinstance(record, dict):
        return record.get("id")
    return record


def _merge_keyed_list(
    current: Any,
    value: Any,
    path: str,
    trusted: bool,
    held: set[Any] | frozenset[Any] = frozenset(),
) -> Any:
    """Upsert records by id. Removals need a trusted delta."""
    base = [r for r in _current_list(current, path)]
    if _is_set_op(value):
        added, removed = _as_items(value.get("added")), _as_items(value.get("removed"))
    elif isinstance(value, list):
        added, removed = value, []
    else:
        return _refuse_shape(current, value, path, "a list of records", trusted)
    if removed and not trusted:
        logger.warning("merge: ignoring untrusted removal from %s: %r", path, removed)
        removed = []

    index = {_record_id(r): i for i, r in enumerate(base) if _record_id(r) is not None}
    for record in added:
        rid = _record_id(record)
        if rid is not None and rid not in index and rid in held:
            logger.warning("merge: %s cannot take %r directly, it is still a suggestion", path, rid)
            continue
        if rid is not None and rid in index:
            existing = base[index[rid]]
            if isinstance(existing, dict) and isinstance(record, dict):
                base[index[rid]] = {**existing, **record}
            else:
                base[index[rid]] = record
        else:
            if rid is not None:
                index[rid] = len(base)
            base.append(record)
    drop = {_record_id(r) for r in removed}
    return [r for r in base if _record_id(r) not in drop]


def _shallow_merge(current: Any, value: Any, path: str) -> Any:
    if not isinstance(current, dict) or not isinstance(value, dict):
        if current is not None and not isinstance(value, type(current)):
            logger.warning("merge: shape mismatch at %s, assigning directly", path)
        return value
    result = dict(current)
    for key, sub in value.items():
        existing = result.get(key)
        if isinstance(existing, dict) and isinstance(sub, dict):
            result[key] = {**existing, **sub}
        else:
            result[key] = sub
    return result


def _merge_generic(current: Any, value: Any, path: str) -> Any:
    if _is_set_op(value):
        if current is None or isinstance(current, list):
            return _merge_protected(current, value, path)
        logger.warning("merge: add/remove object for non-list field %s, assigning directly", path)
        return value
    if isinstance(value, dict) and isinstance(current, dict):
        return _shallow_merge(current, value, path)
    return value


def _merge_character(current: Any, value: Any, path: str, trusted: bool) -> Any:
    if not isinstance(value, dict):
        return _refuse_shape(current, value, path, "a mapping", trusted)
    result = dict(current) if isinstance(current, dict) else {}
    _apply(result, value, CHARACTER_POLICIES, path, trusted)
    return result


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def _apply(
    target: dict[str, Any],
    delta: dict[str, Any],
    policies: dict[str, Policy],
    prefix: str,
    trusted: bool,
) -> None:
    for key, value in delta.items():
        path = f"{prefix}.{key}" if prefix else key
        policy = policies.get(key)
        current = target.get(key)

        if policy is Policy.IMMUTABLE_ADDITIVE:
            merged = _merge_immutable(current, value, path)
        elif policy is Policy.PROTECTED_ADDITIVE:
            merged = _merge_protected(current, value, path)
        elif policy is Policy.IDENTITY:
            merged = _merge_identity(current, value, path)
        elif policy is Policy.REGISTRY:
            merged = _merge_registry(current, value, path, trusted)
        elif policy is Policy.KEYED_LIST:
            held: set[Any] = set()
            if not trusted and key in HELD_IDS:
                holder = HELD_IDS[key]
                held = {_record_id(r) for r in _current_list(target.get(holder), holder)}
            merged = _merge_keyed_list(current, value, path, trusted, held)
        elif policy is Policy.NESTED:
            merged = _merge_character(current, value, path, trusted)
        elif policy is Policy.ENGINE_OWNED:
            if not trusted:
                logger.warning("merge: dropping untrusted write to %s", path)
                continue
            merged = _shallow_merge(current, value, path)
        elif policy is Policy.SHALLOW_MERGE:
            merged = _shallow_merge(current, value, path)
        elif policy is Policy.REPLACE:
            merged = value
        else:
            merged = _merge_generic(current, value, path)

        if merged is None and value is not None and key not in target:
            # refused write to an absent field
            continue
        target[key] = merged


def merge_state(
    current: dict[str, Any],
    delta: dict[str, Any] | None,
    *,
    trusted: bool = False,
) -> dict[str, Any]:
    """Return a new state with ``delta`` folded into ``current``.

    ``current`` is not modified. ``trusted`` deltas come from the engine
    itself (fate state, director mode) and may write engine-owned keys.
    """
    result = copy.deepcopy(current) if current else {}
    if not delta:
        return result
    if not isinstance(delta, dict):
        logger.warning("merge: ignoring non-mapping delta %r", delta)
        return result
    _apply(result, copy.deepcopy(delta), TOP_LEVEL_POLICIES, "", trusted)
    return result


def diff_state(before: dict[str, Any], after: dict[str, Any]) -> dict[str, Any]:
    """Top-level keys whose value changed, with their new value."""
    return {k: v for k, v in after.items() if before.get(k) != v or k not in before}
