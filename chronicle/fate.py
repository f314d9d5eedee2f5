"""Fate resolver: d20 mechanics with bad-luck protection.

Pure functions only. Randomness comes from an injected ``random.Random`` so
callers (and tests) control the sequence.

Roll flow for ``resolve_roll``:
  1. Advantage and disadvantage sources cancel; otherwise the present one wins.
  2. Roll one d20 (straight) or two (keep max for advantage, min for
     disadvantage). A player-supplied natural replaces this step.
  3. Critical logic on the natural die: 20 always crits, 19 crits once more
     than 40 rolls have passed since the last crit, 1 is a fumble unless
     momentum is above 4, in which case it is rerolled once.
  4. Momentum: ``adjusted = min(20, natural + momentum)``. A natural below 8
     adds 2 (capped at 10), a natural above 12 resets it to 0. The counter
     follows the rolled base; a fumble-protection reroll stands unadjusted.
  5. Modifier stack: stat modifier + proficiency + item + situational.
  6. ``total = die result + modifier``; success when ``total >= difficulty``.
"""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass
from typing import Any, Literal

from chronicle.errors import InvalidRequest
from chronicle.models import (
    DiceRoll,
    DifficultyTier,
    FateEngineState,
    ModifierBreakdown,
    RollFlags,
    RollOutcome,
    RollType,
)

logger = logging.getLogger(__name__)

AdvantageState = Literal["advantage", "disadvantage", "straight"]

MOMENTUM_CAP = 10
MOMENTUM_STEP = 2
MISS_BELOW = 8
HIT_ABOVE = 12
PITY_CRIT_GAP = 40
FUMBLE_PROTECTION_ABOVE = 4

# World variants that don't use the six classic ability scores
STAT_ALIASES: dict[str, dict[str, str]] = {
    "outworlder": {
        "STR": "power",
        "DEX": "speed",
        "CON": "stamina",
        "INT": "power",
        "WIS": "recovery",
        "CHA": "power",
    },
    "tactical": {
        "STR": "strength",
        "DEX": "agility",
        "CON": "vitality",
        "INT": "intelligence",
        "WIS": "perception",
        "CHA": "intelligence",
    },
}

_NOTATION_RE = re.compile(r"^\s*(\d*)d(\d+)\s*(?:([+-])\s*(\d+))?\s*$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Stats and modifiers
# ---------------------------------------------------------------------------

def stat_modifier(value: int) -> int:
    """(value - 10) // 2, so 10 → 0, 12 → +1, 8 → -1, 7 → -2."""
    return (value - 10) // 2


def resolve_stat(character: dict[str, Any], stat: str, world: str | None = None) -> int:
    """Look up a stat value across world variants. Unknown stats count as 10."""
    stats = character.get("stats") or {}
    for key in (stat, stat.upper(), stat.lower()):
        value = stats.get(key)
        if isinstance(value, int):
            return value

    tables = [STAT_ALIASES[world]] if world in STAT_ALIASES else list(STAT_ALIASES.values())
    for table in tables:
        mapped = table.get(stat.upper())
        if mapped and isinstance(stats.get(mapped), int):
            return stats[mapped]

    logger.debug("stat %r not found on character, using 10", stat)
    return 10


def proficiency_bonus(character: dict[str, Any]) -> int:
    explicit = character.get("proficiencyBonus")
    if isinstance(explicit, int):
        return explicit
    level = character.get("level") or 1
    return (int(level) - 1) // 4 + 2


def modifier_stack(
    character: dict[str, Any],
    stat: str | None,
    *,
    proficiency_applies: bool = False,
    item_bonus: int = 0,
    situational_mod: int = 0,
    world: str | None = None,
) -> ModifierBreakdown:
    stat_mod = stat_modifier(resolve_stat(character, stat, world)) if stat else 0
    return ModifierBreakdown(
        stat_mod=stat_mod,
        proficiency=proficiency_bonus(character) if proficiency_applies else 0,
        item_bonus=item_bonus,
        situational_mod=situational_mod,
    )


def difficulty_tier(dc: int) -> DifficultyTier:
    if dc <= 4:
        return "trivial"
    if dc <= 9:
        return "very_easy"
    if dc <= 14:
        return "easy"
    if dc <= 17:
        return "moderate"
    if dc <= 19:
        return "hard"
    return "heroic"


# ---------------------------------------------------------------------------
# Dice
# ---------------------------------------------------------------------------

def resolve_advantage(
    advantage_sources: list[str] | None,
    disadvantage_sources: list[str] | None,
) -> AdvantageState:
    has_adv = bool(advantage_sources)
    has_dis = bool(disadvantage_sources)
    if has_adv and has_dis:
        return "straight"
    if has_adv:
        return "advantage"
    if has_dis:
        return "disadvantage"
    return "straight"


def roll_with_advantage(state: AdvantageState, rng: random.Random) -> tuple[list[int], int]:
    """Return (raw_rolls, selected_base)."""
    if state == "straight":
        roll = rng.randint(1, 20)
        return [roll], roll
    rolls = [rng.randint(1, 20), rng.randint(1, 20)]
    return rolls, max(rolls) if state == "advantage" else min(rolls)


def apply_momentum(natural: int, momentum: int) -> tuple[int, int]:
    """Return (adjusted_roll, new_momentum).

    The adjustment never lifts a roll past 20, and the critical flag is
    decided on the natural die, so momentum cannot manufacture a crit.
    """
    adjusted = min(20, natural + momentum)
    if natural < MISS_BELOW:
        momentum = min(MOMENTUM_CAP, momentum + MOMENTUM_STEP)
    elif natural > HIT_ABOVE:
        momentum = 0
    return adjusted, momentum


@dataclass
class CriticalResult:
    natural: int
    critical: bool = False
    fumble: bool = False
    pity_crit: bool = False
    rerolled: bool = False


def resolve_critical(
    natural: int,
    last_crit_turn_count: int,
    momentum: int,
    rng: random.Random,
) -> CriticalResult:
    if natural == 20:
        return CriticalResult(natural, critical=True)
    if natural == 19 and last_crit_turn_count > PITY_CRIT_GAP:
        return CriticalResult(natural, critical=True, pity_crit=True)
    if natural == 1 and momentum > FUMBLE_PROTECTION_ABOVE:
        # One reroll; its own 1 or 20 stands with no further protection
        reroll = rng.randint(1, 20)
        return CriticalResult(
            reroll,
            critical=reroll == 20,
            fumble=reroll == 1,
            rerolled=True,
        )
    if natural == 1:
        return CriticalResult(natural, fumble=True)
    return CriticalResult(natural)


def roll_dice(notation: str, rng: random.Random, purpose: str | None = None) -> DiceRoll:
    """Roll standard notation such as '1d20', 'd6', '2d6+3' or '1d8-1'."""
    match = _NOTATION_RE.match(notation or "")
    if not match:
        raise InvalidRequest(f"Invalid dice notation: {notation!r}")
    count = int(match.group(1) or 1)
    sides = int(match.group(2))
    if count < 1 or sides < 2:
        raise InvalidRequest(f"Invalid dice notation: {notation!r}")
    modifier = int(match.group(4) or 0)
    if match.group(3) == "-":
        modifier = -modifier

    rolls = [rng.randint(1, sides) for _ in range(count)]
    result = sum(rolls)
    return DiceRoll(
        type=f"{count}d{sides}" if count > 1 else f"d{sides}",
        result=result,
        modifier=modifier,
        total=result + modifier,
        purpose=purpose,
        raw_rolls=rolls,
    )


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

@dataclass
class FateResult:
    roll: DiceRoll
    state: FateEngineState


def resolve_roll(
    *,
    character: dict[str, Any],
    fate: FateEngineState,
    rng: random.Random,
    roll_type: RollType = "skill",
    stat: str | None = None,
    difficulty: int | None = None,
    proficiency_applies: bool = False,
    item_bonus: int = 0,
    situational_mod: int = 0,
    advantage_sources: list[str] | None = None,
    disadvantage_sources: list[str] | None = None,
    natural: int | None = None,
    purpose: str | None = None,
    world: str | None = None,
) -> FateResult:
    """Resolve one d20 check and return the annotated roll plus new fate state.

    ``natural`` is a die the player already rolled; when given, the
    advantage step is skipped and that value is used as the base.
    """
    if natural is not None and not 1 <= natural <= 20:
        raise InvalidRequest(f"Roll result must be between 1 and 20, got {natural}")
    if difficulty is not None and difficulty < 1:
        raise InvalidRequest(f"Difficulty must be positive, got {difficulty}")

    adv_state = resolve_advantage(advantage_sources, disadvantage_sources)
    if natural is None:
        raw_rolls, base = roll_with_advantage(adv_state, rng)
    else:
        raw_rolls, base = [natural], natural

    crit = resolve_critical(base, fate.last_crit_turn_count, fate.momentum_counter, rng)
    if crit.rerolled:
        raw_rolls.append(crit.natural)

    # momentum follows the rolled base, not a protection reroll
    adjusted, new_momentum = apply_momentum(base, fate.momentum_counter)
    if crit.critical:
        die = 20
    elif crit.fumble or crit.rerolled:
        die = crit.natural
    else:
        die = adjusted

    breakdown = modifier_stack(
        character,
        stat,
        proficiency_applies=proficiency_applies,
        item_bonus=item_bonus,
        situational_mod=situational_mod,
        world=world,
    )
    modifier = breakdown.total
    total = die + modifier

    outcome = None
    success = None
    if difficulty is not None:
        success = total >= difficulty
        outcome = RollOutcome(
            target_dc=difficulty,
            difficulty_tier=difficulty_tier(difficulty),
            success=success,
            margin=total - difficulty,
        )

    roll = DiceRoll(
        type="d20",
        result=die,
        modifier=modifier,
        total=total,
        purpose=purpose or f"{roll_type} roll",
        difficulty=difficulty,
        success=success,
        natural=crit.natural,
        raw_rolls=raw_rolls,
        roll_type=roll_type,
        flags=RollFlags(
            advantage=adv_state == "advantage" and natural is None,
            disadvantage=adv_state == "disadvantage" and natural is None,
            critical=crit.critical,
            fumble=crit.fumble,
            pity_crit=crit.pity_crit,
            fumble_rerolled=crit.rerolled,
            streak_breaker_active=fate.momentum_counter > 0,
        ),
        breakdown=breakdown,
        outcome=outcome,
    )
    new_state = FateEngineState(
        momentum_counter=new_momentum,
        last_crit_turn_count=0 if crit.critical else fate.last_crit_turn_count + 1,
        director_mode_cooldown=fate.director_mode_cooldown,
    )
    logger.debug(
        "fate roll natural=%d die=%d total=%d momentum=%d->%d crit=%s fumble=%s",
        crit.natural, die, total, fate.momentum_counter, new_momentum,
        crit.critical, crit.fumble,
    )
    return FateResult(roll=roll, state=new_state)


# ---------------------------------------------------------------------------
# Director mode
# ---------------------------------------------------------------------------

HP_CRITICAL_BELOW = 0.25
RESOURCE_EXHAUSTED_BELOW = 0.20
_RESOURCE_POOLS = ("mana", "stamina", "nanites")


def _ratio(pool: Any) -> float | None:
    if not isinstance(pool, dict):
        return None
    current, maximum = pool.get("current"), pool.get("max")
    if not isinstance(current, (int, float)) or not isinstance(maximum, (int, float)) or maximum <= 0:
        return None
    return current / maximum


def director_trigger(character: dict[str, Any]) -> str | None:
    """Return the reason director mode should engage, or None."""
    hp = _ratio(character.get("hp"))
    if hp is not None and 0 < hp < HP_CRITICAL_BELOW:
        return "HP Critical"
    for name in _RESOURCE_POOLS:
        ratio = _ratio(character.get(name))
        if ratio is not None and 0 <= ratio < RESOURCE_EXHAUSTED_BELOW:
            return "Resource Exhaustion"
    return None


def check_director_mode(
    character: dict[str, Any],
    fate: FateEngineState,
) -> tuple[FateEngineState, str | None]:
    """Engage director mode once per crisis.

    Returns the updated fate state and the system message to show, if any.
    The cooldown clears once the character is out of danger again.
    """
    reason = director_trigger(character)
    if reason is None:
        if fate.director_mode_cooldown:
            return fate.model_copy(update={"director_mode_cooldown": False}), None
        return fate, None
    if fate.director_mode_cooldown:
        return fate, None

    logger.info("director mode triggered: %s", reason)
    message = (
        f"[Director Mode] Difficulty adjusted - {reason} detected. "
        "Enemies are less accurate for 2 rounds."
    )
    return fate.model_copy(update={"director_mode_cooldown": True}), message
