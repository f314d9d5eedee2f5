"""Consistency reviewer: a second model pass over the finished narrative.

The reviewer proposes corrections the narrative implies but the Brain's delta
missed. Corrections are translated into an ordinary state delta and applied
with ``merge_state`` like any other untrusted delta, so the reviewer cannot
shrink immutable fields or rename the character either.

Everything here raises ``ReviewerFailure``; the pipeline logs and ignores it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from chronicle.errors import ProviderFailure, ReviewerFailure
from chronicle.llm import LLMProvider
from chronicle.models import TokenUsage
from chronicle.parser import ParseFailure, extract_json_object
from chronicle.prompts import render_role
from chronicle.summary import build_campaign_ledger

logger = logging.getLogger(__name__)

_POOLS = ("hp", "mana", "stamina", "nanites")
_SCALARS = ("gold", "experience")


@dataclass
class ReviewOutcome:
    skipped: bool = False
    skip_reason: str | None = None
    corrections: dict[str, Any] = field(default_factory=dict)
    delta: dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def corrections_to_delta(corrections: dict[str, Any], state: dict[str, Any]) -> dict[str, Any]:
    """Map the reviewer's correction vocabulary onto state-delta shapes."""
    character = state.get("character") if isinstance(state.get("character"), dict) else None
    delta: dict[str, Any] = {}
    char_delta: dict[str, Any] = {}

    inventory = corrections.get("inventory")
    if isinstance(inventory, dict):
        op = {"added": _list(inventory.get("added")), "removed": _list(inventory.get("removed"))}
        if op["added"] or op["removed"]:
            if character is not None and "inventory" in character:
                char_delta["inventory"] = op
            else:
                delta["inventory"] = op

    for pool in _POOLS:
        value = corrections.get(pool)
        if isinstance(value, dict):
            values = {k: v for k, v in value.items() if k in ("current", "max") and isinstance(v, (int, float))}
            if values:
                char_delta[pool] = values

    if isinstance(corrections.get("fatigue"), (int, float)):
        char_delta["fatigue"] = corrections["fatigue"]

    powers = corrections.get("powers")
    if isinstance(powers, dict) and _list(powers.get("added")):
        # removals are passed along so the merger can refuse them visibly
        char_delta["abilities"] = {"added": powers["added"], "removed": _list(powers.get("removed"))}

    party = corrections.get("partyMembers")
    if isinstance(party, dict):
        op = {"added": _list(party.get("joined")), "removed": _list(party.get("left"))}
        if op["added"] or op["removed"]:
            delta["partyMembers"] = op

    for key in _SCALARS:
        value = corrections.get(key)
        if isinstance(value, (int, float)):
            if character is not None and key in character:
                char_delta[key] = value
            else:
                delta[key] = value

    progress = corrections.get("questProgress")
    if isinstance(progress, dict):
        updates = [{"id": qid, **upd} for qid, upd in progress.items() if isinstance(upd, dict)]
        if updates:
            delta["questLog"] = updates

    if char_delta:
        delta["character"] = char_delta
    return delta


class ConsistencyReviewer:
    def __init__(
        self,
        provider: LLMProvider,
        *,
        enabled: bool = True,
        frequency: int = 1,
        templates: dict[str, str] | None = None,
    ) -> None:
        self._provider = provider
        self.enabled = enabled
        self.frequency = max(1, int(frequency))
        self._templates = templates

    def skip_reason(self, turn_number: int) -> str | None:
        if not self.enabled:
            return "State reviewer is disabled"
        if turn_number % self.frequency != 0:
            return f"Only runs every {self.frequency} turn(s)"
        return None

    async def review(
        self,
        *,
        narrative: str,
        state: dict[str, Any],
        world: str,
        turn_number: int,
    ) -> ReviewOutcome:
        reason = self.skip_reason(turn_number)
        if reason:
            logger.debug("reviewer skipped: %s", reason)
            return ReviewOutcome(skipped=True, skip_reason=reason)

        system = render_role("reviewer", {
            "ledger": build_campaign_ledger(state, world),
            "state_json": json.dumps(state, indent=2, default=str),
        }, self._templates)
        user = render_role("reviewer_user", {"narrative": narrative}, self._templates)

        try:
            completion = await self._provider.complete(
                system, [], user, json_mode=True, temperature=0.3, max_tokens=1000,
            )
        except ProviderFailure as e:
            raise ReviewerFailure(f"Reviewer provider failed: {e.message}") from e

        parsed = extract_json_object(completion.text)
        if isinstance(parsed, ParseFailure):
            raise ReviewerFailure(f"Reviewer returned an unreadable response: {parsed.reason}")

        corrections = parsed.value.get("corrections")
        if not isinstance(corrections, dict):
            corrections = {}
        delta = corrections_to_delta(corrections, state)
        logger.info("reviewer corrections=%s", sorted(delta))
        return ReviewOutcome(
            corrections=corrections,
            delta=delta,
            reasoning=str(parsed.value.get("reasoning") or ""),
            usage=completion.usage,
        )
