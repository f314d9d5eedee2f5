"""Rules interpreter ("Brain").

Builds the system prompt from world rules, the campaign ledger, reference
documents and interaction-mode instructions, calls one provider in JSON
mode, and parses the reply into a ``BrainResult``. Any provider or parser
failure is surfaced as ``BrainFailure`` before state is touched.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from chronicle.errors import BrainFailure, InvalidResponse, ProviderFailure
from chronicle.llm import LLMProvider
from chronicle.models import BrainResult, ChatMessage, PendingRoll, TokenUsage
from chronicle.parser import parse_brain_response
from chronicle.prompts import WORLD_STAT_CONTEXT, render_role
from chronicle.quests import get_active_quest
from chronicle.summary import build_campaign_ledger

logger = logging.getLogger(__name__)

INTRO_PHASE_MESSAGES = 10

AUTO_DICE_RULES = (
    'Calculate all dice rolls yourself and include them in "diceRolls". '
    'ALWAYS include "purpose", "modifier", "total" and "difficulty" (target DC) where applicable.'
)

INTERACTIVE_DICE_RULES = (
    "INTERACTIVE DICE MODE IS ACTIVE. When an action needs a roll (attacks, offensive spells, "
    "risky skill checks, saving throws) set \"requiresUserInput\": true and a \"pendingRoll\" "
    '{"type": "d20", "purpose": "...", "modifier": 0, "stat": "...", "difficulty": 15}, '
    'leave "diceRolls" empty and describe only the setup. Routine, safe or informational '
    "actions succeed automatically and never need a roll."
)


@dataclass
class BrainCall:
    result: BrainResult
    usage: TokenUsage
    raw: str


def _name(entry: Any) -> str:
    if isinstance(entry, dict):
        return str(entry.get("name") or "Unknown")
    return str(entry)


def essence_override(character: dict[str, Any], history_len: int) -> str:
    """Remind the model that chosen essences and abilities are already active."""
    essences = character.get("essences") or []
    if not essences:
        return ""
    if character.get("essenceSelection") not in (None, "chosen", "imported"):
        return ""

    essence_list = ", ".join(_name(e) for e in essences)
    abilities = character.get("abilities") or []
    lines = [
        "ALL ESSENCES AND ABILITIES ARE ACTIVE",
        f"- Essences: {essence_list}",
        f"- Rank: {character.get('rank') or 'Iron'}",
        f"- Existing Abilities: {', '.join(_name(a) for a in abilities) or 'None yet'}",
        "Every essence above is fully unlocked. Do not run awakening or selection sequences.",
    ]
    if abilities and history_len < INTRO_PHASE_MESSAGES:
        lines.append(
            "The ability set is locked during the introduction. Do NOT add abilities in stateUpdates."
        )
    elif abilities:
        lines.append(
            "Grant new abilities ONLY for a specific item use or an explicitly earned quest reward."
        )
    else:
        lines.append("The character has essences but no abilities yet. Grant intrinsic abilities as they awaken.")
    return "\n".join(lines)


def dice_rules(interactive: bool, roll_result: int | None, pending: PendingRoll | None) -> str:
    if not interactive:
        return AUTO_DICE_RULES
    if roll_result is None:
        return INTERACTIVE_DICE_RULES
    modifier = pending.modifier if pending and pending.modifier else 0
    return (
        f"The player rolled {roll_result} for a pending roll. Add it to \"diceRolls\" with "
        f"modifier {modifier} and total {roll_result + modifier}. Do not request the same roll again."
    )


def choices_rule(show: bool) -> str:
    if show:
        return (
            'Include a "pendingChoice" with 2-4 "options": first-person actions the player could take next '
            '("I ask about...", "I examine..."), never outcomes or NPC reactions.'
        )
    return 'Do not include options in "pendingChoice".'


def roll_result_rule(roll_result: int | None, pending: PendingRoll | None) -> str:
    if roll_result is None:
        return ""
    purpose = pending.purpose if pending else "unknown purpose"
    modifier = pending.modifier if pending and pending.modifier else 0
    dc = pending.difficulty if pending and pending.difficulty else "N/A"
    return (
        f'DICE ROLL RESULT RECEIVED: {roll_result} for "{purpose}".\n'
        f"Success = ({roll_result} + {modifier}) vs DC {dc}. This result is final.\n"
        "Do not invent extra modifiers. If the roll fails, it fails: apply the consequences."
    )


class RulesInterpreter:
    """Turns a player action plus state into a structured ``BrainResult``."""

    def __init__(
        self,
        provider: LLMProvider,
        *,
        templates: dict[str, str] | None = None,
        world_rules: dict[str, str] | None = None,
        temperature: float = 0.5,
        max_tokens: int = 2000,
    ) -> None:
        self._provider = provider
        self._templates = templates
        self._world_rules = world_rules or {}
        self._temperature = temperature
        self._max_tokens = max_tokens

    def build_system_prompt(
        self,
        *,
        state: dict[str, Any],
        world: str,
        history: list[ChatMessage],
        knowledge: list[str],
        interactive_dice: bool,
        show_choices: bool,
        roll_result: int | None = None,
        pending_roll: PendingRoll | None = None,
    ) -> str:
        context = {
            "dice_header": interactive_dice and roll_result is None,
            "world_stats": WORLD_STAT_CONTEXT.get(world, ""),
            "knowledge": knowledge,
            "custom_rules": self._world_rules.get(world, ""),
            "essence_override": essence_override(state.get("character") or {}, len(history)),
            "dice_rules": dice_rules(interactive_dice, roll_result, pending_roll),
            "choices_rule": choices_rule(show_choices),
            "roll_result_rule": roll_result_rule(roll_result, pending_roll),
            "active_quest": get_active_quest(state),
            "ledger": build_campaign_ledger(state, world),
            "state_json": json.dumps(state, indent=2, default=str),
        }
        return render_role("brain", context, self._templates)

    async def interpret(
        self,
        *,
        user_input: str,
        state: dict[str, Any],
        world: str,
        history: list[ChatMessage],
        knowledge: list[str],
        interactive_dice: bool = False,
        show_choices: bool = True,
        roll_result: int | None = None,
        pending_roll: PendingRoll | None = None,
    ) -> BrainCall:
        system = self.build_system_prompt(
            state=state,
            world=world,
            history=history,
            knowledge=knowledge,
            interactive_dice=interactive_dice,
            show_choices=show_choices,
            roll_result=roll_result,
            pending_roll=pending_roll,
        )
        user = render_role("brain_user", {"user_input": user_input}, self._templates)

        try:
            completion = await self._provider.complete(
                system,
                history,
                user,
                json_mode=True,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except ProviderFailure as e:
            raise BrainFailure(f"Brain provider failed: {e.message}") from e
        except httpx.HTTPError as e:
            raise BrainFailure(f"Brain provider failed: {e.__class__.__name__}") from e

        try:
            result = parse_brain_response(completion.text)
        except InvalidResponse as e:
            raise BrainFailure(f"Brain returned an unreadable response: {e.message}") from e

        logger.info(
            "brain cues=%d rolls=%d pending_roll=%s pending_choice=%s",
            len(result.narrative_cues), len(result.dice_rolls),
            result.pending_roll is not None, result.pending_choice is not None,
        )
        return BrainCall(result=result, usage=completion.usage, raw=completion.text)
