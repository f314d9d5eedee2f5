"""Recover structured JSON from free-text model output.

Model replies arrive fenced, prefixed with chatter, or truncated. Recovery is
an ordered chain of strategies; each takes the (fence-stripped) text and
returns a dict or None, so each can be tested on its own:

    direct       → the whole text is a JSON object
    key_pattern  → greedy match spanning characteristic Brain keys
    brace_scan   → first balanced {...} from the first brace, string-aware

``extract_json_object`` returns a tagged ``ParseSuccess`` / ``ParseFailure``.
``parse_brain_response`` builds on it and raises ``InvalidResponse`` when
nothing can be recovered.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from chronicle.errors import InvalidResponse
from chronicle.models import (
    BrainResult,
    DiceRoll,
    NarrativeCue,
    PendingChoice,
    PendingRoll,
)

logger = logging.getLogger(__name__)

FALLBACK_NARRATIVE = "The action was processed."

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")
_KEY_PATTERNS = (
    re.compile(r'\{[\s\S]*"stateUpdates"[\s\S]*"narrativeCues"[\s\S]*\}'),
    re.compile(r'\{[\s\S]*"narrativeCues"[\s\S]*"diceRolls"[\s\S]*\}'),
    re.compile(r'\{[\s\S]*"narrativeCue"[\s\S]*\}'),
)
_CUE_TYPES = {"action", "dialogue", "description", "combat", "discovery"}


@dataclass
class ParseSuccess:
    value: dict[str, Any]
    strategy: str


@dataclass
class ParseFailure:
    reason: str
    attempted: list[str] = field(default_factory=list)


ParseResult = ParseSuccess | ParseFailure
Strategy = Callable[[str], "dict[str, Any] | None"]


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def strip_fences(text: str) -> str:
    """Return the body of the first ``` fence, or the trimmed text."""
    text = text.strip()
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def direct_json(text: str) -> dict[str, Any] | None:
    return _loads_object(text)


def key_pattern(text: str) -> dict[str, Any] | None:
    for pattern in _KEY_PATTERNS:
        match = pattern.search(text)
        if match:
            value = _loads_object(match.group(0))
            if value is not None:
                return value
    return None


def brace_scan(text: str) -> dict[str, Any] | None:
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return _loads_object(text[start:i + 1])
    return None


DEFAULT_STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("direct", direct_json),
    ("key_pattern", key_pattern),
    ("brace_scan", brace_scan),
)


def extract_json_object(
    raw: str,
    strategies: Sequence[tuple[str, Strategy]] = DEFAULT_STRATEGIES,
) -> ParseResult:
    if not raw or not raw.strip():
        return ParseFailure("empty response")

    text = raw.strip()
    # raw text first: a fence inside a JSON string is not a wrapper
    candidates = list(dict.fromkeys((text, strip_fences(text))))
    attempted: list[str] = []
    for name, strategy in strategies:
        attempted.append(name)
        for candidate in candidates:
            value = strategy(candidate)
            if value is not None:
                if name != "direct":
                    logger.info("recovered JSON object with strategy=%s", name)
                return ParseSuccess(value, name)

    logger.warning("JSON recovery failed after %s: %.200s", attempted, raw)
    return ParseFailure("no JSON object could be recovered", attempted)


# ---------------------------------------------------------------------------
# Brain payload normalisation
# ---------------------------------------------------------------------------

def _normalize_cue(cue: Any) -> Any:
    if isinstance(cue, str):
        return {"type": "description", "content": cue}
    return cue


def _normalize_roll(roll: Any) -> Any:
    if isinstance(roll, dict) and "total" not in roll and isinstance(roll.get("result"), int):
        modifier = roll.get("modifier") if isinstance(roll.get("modifier"), int) else 0
        return {**roll, "total": roll["result"] + modifier}
    return roll


def normalize_brain_payload(data: dict[str, Any]) -> dict[str, Any]:
    """Coerce loose shapes the models commonly emit into the schema's shapes."""
    data = dict(data)
    cues = data.get("narrativeCues")
    if isinstance(cues, str):
        data["narrativeCues"] = [{"type": "description", "content": cues}]
    elif isinstance(cues, list):
        data["narrativeCues"] = [_normalize_cue(c) for c in cues]
    if isinstance(data.get("systemMessages"), str):
        data["systemMessages"] = [data["systemMessages"]]
    if isinstance(data.get("diceRolls"), list):
        data["diceRolls"] = [_normalize_roll(r) for r in data["diceRolls"]]
    if isinstance(data.get("pendingRoll"), dict):
        data["pendingRoll"] = {"type": "d20", **data["pendingRoll"]}
        if not data["pendingRoll"].get("type"):
            data["pendingRoll"]["type"] = "d20"
    return data


def _coerce_cue(cue: Any) -> NarrativeCue | None:
    if not isinstance(cue, dict):
        return None
    try:
        return NarrativeCue.model_validate(cue)
    except ValidationError:
        content = cue.get("content")
        if not content:
            return None
        cue_type = cue.get("type") if cue.get("type") in _CUE_TYPES else "description"
        speaker = cue.get("speaker")
        # emotion is not salvaged
        return NarrativeCue(
            type=cue_type,
            content=str(content),
            speaker=str(speaker) if speaker is not None else None,
        )


def _validate_each(items: Any, model: type) -> list:
    out = []
    for item in items if isinstance(items, list) else []:
        try:
            out.append(model.model_validate(item))
        except ValidationError:
            logger.debug("dropping invalid %s: %r", model.__name__, item)
    return out


def _validate_optional(value: Any, model: type) -> Any:
    if not isinstance(value, dict):
        return None
    try:
        return model.model_validate(value)
    except ValidationError:
        logger.debug("dropping invalid %s: %r", model.__name__, value)
        return None


def _recover_fields(data: dict[str, Any]) -> BrainResult:
    """Field-by-field best effort when the whole payload fails validation."""
    cues = [c for c in (_coerce_cue(c) for c in data.get("narrativeCues") or []) if c]
    messages = data.get("systemMessages")
    return BrainResult(
        success=True,
        state_updates=data["stateUpdates"] if isinstance(data.get("stateUpdates"), dict) else {},
        narrative_cues=cues,
        narrative_cue=data["narrativeCue"] if isinstance(data.get("narrativeCue"), str) else None,
        dice_rolls=_validate_each(data.get("diceRolls"), DiceRoll),
        system_messages=[str(m) for m in messages] if isinstance(messages, list) else [],
        requires_user_input=bool(data.get("requiresUserInput")),
        pending_choice=_validate_optional(data.get("pendingChoice"), PendingChoice),
        pending_roll=_validate_optional(data.get("pendingRoll"), PendingRoll),
    )


def parse_brain_response(raw: str) -> BrainResult:
    """Parse a Brain reply into a ``BrainResult``.

    Raises InvalidResponse when no JSON object can be recovered. A recovered
    object that fails schema validation is salvaged field by field instead.
    The result always carries a non-empty ``narrative_cue``.
    """
    parsed = extract_json_object(raw)
    if isinstance(parsed, ParseFailure):
        raise InvalidResponse(f"Invalid JSON response from Brain: {parsed.reason}")

    data = normalize_brain_payload(parsed.value)
    try:
        result = BrainResult.model_validate(data)
    except ValidationError as e:
        logger.warning("Brain response failed validation, salvaging fields: %s", e.error_count())
        result = _recover_fields(data)

    if not (result.narrative_cue or "").strip() and result.narrative_cues:
        result.narrative_cue = " ".join(c.content for c in result.narrative_cues).strip()
    if not (result.narrative_cue or "").strip():
        result.narrative_cue = FALLBACK_NARRATIVE
    return result
