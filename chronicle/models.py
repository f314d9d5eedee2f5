"""Core domain models.

All pipeline stages and storage functions operate on these types.
Pydantic is used for validation and serialisation at every data boundary.
Wire-facing models dump camelCase (``model_dump(by_alias=True)``) and accept
either camelCase or snake_case on input.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CueType = Literal["action", "dialogue", "description", "combat", "discovery"]
Emotion = Literal["neutral", "tense", "triumphant", "mysterious", "danger"]
ChoiceType = Literal["action", "target", "dialogue", "direction", "item", "decision"]
RollType = Literal["attack", "save", "skill", "ability", "damage"]
QuestStatus = Literal["active", "completed", "failed"]
DifficultyTier = Literal["trivial", "very_easy", "easy", "moderate", "hard", "heroic"]


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------

class ChatMessage(WireModel):
    """A single entry in a campaign transcript."""

    role: Literal["user", "assistant", "system"]
    content: str
    ts: str | None = None


# ---------------------------------------------------------------------------
# Brain output
# ---------------------------------------------------------------------------

class NarrativeCue(WireModel):
    type: CueType = "description"
    content: str
    speaker: str | None = None
    emotion: Emotion | None = None


class RollFlags(WireModel):
    advantage: bool = False
    disadvantage: bool = False
    critical: bool = False
    fumble: bool = False
    pity_crit: bool = False
    fumble_rerolled: bool = False
    streak_breaker_active: bool = False


class ModifierBreakdown(WireModel):
    stat_mod: int = 0
    proficiency: int = 0
    item_bonus: int = 0
    situational_mod: int = 0

    @property
    def total(self) -> int:
        return self.stat_mod + self.proficiency + self.item_bonus + self.situational_mod


class RollOutcome(WireModel):
    target_dc: int
    difficulty_tier: DifficultyTier
    success: bool
    margin: int


class DiceRoll(WireModel):
    """One resolved roll. ``total`` is always ``result + modifier``."""

    type: str = "d20"
    result: int
    modifier: int | None = None
    total: int
    purpose: str | None = None
    difficulty: int | None = None
    success: bool | None = None
    label: str | None = None

    # Present only on rolls resolved by the fate engine
    natural: int | None = None
    raw_rolls: list[int] | None = None
    roll_type: RollType | None = None
    flags: RollFlags | None = None
    breakdown: ModifierBreakdown | None = None
    outcome: RollOutcome | None = None


class PendingRoll(WireModel):
    """A roll the Brain wants the player to make before it continues."""

    type: str = "d20"
    purpose: str
    modifier: int | None = None
    stat: str | None = None
    difficulty: int | None = None

    roll_type: RollType = "skill"
    proficiency_applies: bool = False
    item_bonus: int = 0
    situational_mod: int = 0
    advantage_sources: list[str] = Field(default_factory=list)
    disadvantage_sources: list[str] = Field(default_factory=list)


class PendingChoice(WireModel):
    prompt: str
    options: list[str] = Field(default_factory=list)
    choice_type: ChoiceType = "decision"


class BrainResult(WireModel):
    success: bool = True
    state_updates: dict[str, Any] = Field(default_factory=dict)
    narrative_cues: list[NarrativeCue] = Field(default_factory=list)
    narrative_cue: str | None = None
    dice_rolls: list[DiceRoll] = Field(default_factory=list)
    system_messages: list[str] = Field(default_factory=list)
    requires_user_input: bool = False
    pending_choice: PendingChoice | None = None
    pending_roll: PendingRoll | None = None


class TokenUsage(WireModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


# ---------------------------------------------------------------------------
# Persistent sub-records
# ---------------------------------------------------------------------------

class FateEngineState(BaseModel):
    """Per-campaign fate record. Stored under the ``fateEngine`` state key."""

    momentum_counter: int = 0
    last_crit_turn_count: int = 0
    director_mode_cooldown: bool = False


class QuestObjective(WireModel):
    id: str | None = None
    text: str
    completed: bool = False


class Quest(WireModel):
    id: str
    title: str
    description: str = ""
    objectives: list[QuestObjective] = Field(default_factory=list)
    status: QuestStatus = "active"
    started_at: str | None = None
    completed_at: str | None = None
    failed_at: str | None = None
    rewards: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# resolveTurn contract
# ---------------------------------------------------------------------------

class TurnRequest(WireModel):
    campaign_id: str
    user_input: str
    world_module: str
    current_state: dict[str, Any] = Field(default_factory=dict)
    chat_history: list[ChatMessage] = Field(default_factory=list)
    user_tier: str = "scout"
    user_id: str | None = None
    byok_keys: dict[str, str] | None = None
    interactive_dice_rolls: bool = False
    show_suggested_choices: bool = True
    roll_result: int | None = None
    pending_roll: PendingRoll | None = None
    model_overrides: dict[str, str] | None = None
    turn_number: int | None = None


class TurnResponse(WireModel):
    success: bool
    narrative: str = ""
    state_updates: dict[str, Any] = Field(default_factory=dict)
    dice_rolls: list[DiceRoll] = Field(default_factory=list)
    system_messages: list[str] = Field(default_factory=list)
    requires_user_input: bool = False
    pending_choice: PendingChoice | None = None
    pending_roll: PendingRoll | None = None
    remaining_turns: int | None = None
    turn_cost: int = 0
    saved: bool = False
    charged: bool = False
    error_code: str | None = None
    error: str | None = None
