"""Narrator ("Voice"): turns Brain cues and dice results into prose.

The word-count contract is stated in the prompt; output is never truncated
afterwards. ``fallback_narrative`` gives the pipeline something to show
when the narrator call fails.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from chronicle.llm import LLMProvider
from chronicle.models import ChatMessage, DiceRoll, NarrativeCue, TokenUsage
from chronicle.parser import FALLBACK_NARRATIVE
from chronicle.prompts import DEFAULT_VOICE_STYLE, VOICE_STYLES, render_role

logger = logging.getLogger(__name__)


@dataclass
class VoiceCall:
    narrative: str
    usage: TokenUsage


def _roll_context(roll: DiceRoll) -> dict[str, Any]:
    return {
        "purpose": roll.purpose or roll.label or "Check",
        "type": roll.type,
        "result": roll.result,
        "modifier": roll.modifier or 0,
        "total": roll.total,
    }


def fallback_narrative(cues: list[NarrativeCue], narrative_cue: str | None = None) -> str:
    """The Brain's own terse text, used when the narrator is unavailable."""
    if narrative_cue and narrative_cue.strip():
        return narrative_cue.strip()
    text = " ".join(c.content for c in cues).strip()
    return text or FALLBACK_NARRATIVE


class Narrator:
    def __init__(
        self,
        provider: LLMProvider,
        *,
        templates: dict[str, str] | None = None,
        min_words: int = 150,
        max_words: int = 250,
        max_tokens: int = 1024,
        temperature: float = 0.8,
    ) -> None:
        self._provider = provider
        self._templates = templates
        self.min_words = min_words
        self.max_words = max_words
        self._max_tokens = max_tokens
        self._temperature = temperature

    def build_prompts(
        self,
        *,
        cues: list[NarrativeCue],
        dice_rolls: list[DiceRoll],
        state_changes: dict[str, Any],
        system_messages: list[str],
        world: str,
        knowledge: list[str],
        character: dict[str, Any] | None = None,
    ) -> tuple[str, str]:
        system = render_role("voice", {
            "style": VOICE_STYLES.get(world, DEFAULT_VOICE_STYLE),
            "knowledge": knowledge,
            "character_name": (character or {}).get("name"),
            "min_words": self.min_words,
            "max_words": self.max_words,
        }, self._templates)
        user = render_role("voice_user", {
            "dice_rolls": [_roll_context(r) for r in dice_rolls],
            "cues": [c.model_dump(exclude_none=True) for c in cues],
            "state_changes": [
                {"key": k, "value": json.dumps(v, default=str)} for k, v in state_changes.items()
            ],
            "system_messages": system_messages,
            "min_words": self.min_words,
            "max_words": self.max_words,
        }, self._templates)
        return system, user

    async def narrate(
        self,
        *,
        cues: list[NarrativeCue],
        dice_rolls: list[DiceRoll],
        state_changes: dict[str, Any],
        system_messages: list[str],
        history: list[ChatMessage],
        world: str,
        knowledge: list[str],
        character: dict[str, Any] | None = None,
    ) -> VoiceCall:
        """Raises ProviderFailure; the pipeline decides how to degrade."""
        system, user = self.build_prompts(
            cues=cues,
            dice_rolls=dice_rolls,
            state_changes=state_changes,
            system_messages=system_messages,
            world=world,
            knowledge=knowledge,
            character=character,
        )
        completion = await self._provider.complete(
            system,
            history,
            user,
            json_mode=False,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        narrative = completion.text.strip()
        logger.debug("voice words=%d limit=%d-%d", len(narrative.split()), self.min_words, self.max_words)
        return VoiceCall(narrative=narrative, usage=completion.usage)
