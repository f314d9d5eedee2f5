"""Tests for chronicle.fate - momentum, criticals, modifiers, director mode."""

import random

import pytest

from chronicle.errors import InvalidRequest
from chronicle.fate import (
    apply_momentum,
    check_director_mode,
    difficulty_tier,
    director_trigger,
    modifier_stack,
    proficiency_bonus,
    resolve_advantage,
    resolve_critical,
    resolve_roll,
    resolve_stat,
    roll_dice,
    stat_modifier,
)
from chronicle.models import FateEngineState


class ScriptedRandom(random.Random):
    """randint returns the scripted values in order."""

    def __init__(self, *values: int) -> None:
        super().__init__(0)
        self.values = list(values)

    def randint(self, a: int, b: int) -> int:
        value = self.values.pop(0)
        assert a <= value <= b
        return value


FIGHTER = {"name": "Kael", "level": 5, "stats": {"STR": 16, "DEX": 12, "WIS": 8}}


# ---------------------------------------------------------------------------
# Momentum
# ---------------------------------------------------------------------------

class TestMomentum:
    def test_low_roll_builds_momentum(self) -> None:
        assert apply_momentum(5, 0) == (5, 2)

    def test_momentum_caps_at_ten(self) -> None:
        momentum = 0
        for _ in range(10):
            _, momentum = apply_momentum(3, momentum)
            assert 0 <= momentum <= 10
        assert momentum == 10

    def test_high_roll_resets(self) -> None:
        assert apply_momentum(13, 8) == (20, 0)

    def test_middle_roll_keeps_momentum(self) -> None:
        assert apply_momentum(10, 4) == (14, 4)

    def test_adjusted_never_exceeds_twenty(self) -> None:
        adjusted, _ = apply_momentum(18, 10)
        assert adjusted == 20


# ---------------------------------------------------------------------------
# Criticals
# ---------------------------------------------------------------------------

class TestCritical:
    def test_natural_twenty_always_crits(self) -> None:
        result = resolve_critical(20, 0, 0, ScriptedRandom())
        assert result.critical and not result.pity_crit

    def test_nineteen_is_not_crit_within_gap(self) -> None:
        assert not resolve_critical(19, 40, 0, ScriptedRandom()).critical

    def test_nineteen_pity_crit_after_gap(self) -> None:
        result = resolve_critical(19, 41, 0, ScriptedRandom())
        assert result.critical and result.pity_crit

    def test_one_is_fumble_at_low_momentum(self) -> None:
        result = resolve_critical(1, 0, 4, ScriptedRandom())
        assert result.fumble and not result.rerolled

    def test_one_rerolled_at_high_momentum(self) -> None:
        result = resolve_critical(1, 0, 6, ScriptedRandom(14))
        assert result.rerolled
        assert result.natural == 14
        assert not result.fumble

    def test_reroll_of_one_stays_fumble(self) -> None:
        result = resolve_critical(1, 0, 6, ScriptedRandom(1))
        assert result.rerolled and result.fumble

    def test_reroll_of_twenty_crits(self) -> None:
        result = resolve_critical(1, 0, 6, ScriptedRandom(20))
        assert result.rerolled and result.critical


# ---------------------------------------------------------------------------
# Stats and modifiers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("value,expected", [(10, 0), (11, 0), (12, 1), (8, -1), (7, -2), (20, 5)])
def test_stat_modifier(value, expected):
    assert stat_modifier(value) == expected


def test_resolve_stat_direct_and_case_insensitive():
    assert resolve_stat(FIGHTER, "STR") == 16
    assert resolve_stat(FIGHTER, "str") == 16


def test_resolve_stat_world_alias():
    outworlder = {"stats": {"power": 14, "speed": 12}}
    assert resolve_stat(outworlder, "STR", "outworlder") == 14
    assert resolve_stat(outworlder, "DEX", "outworlder") == 12

    tactical = {"stats": {"agility": 18}}
    assert resolve_stat(tactical, "DEX", "tactical") == 18


def test_resolve_stat_unknown_is_ten():
    assert resolve_stat(FIGHTER, "LUCK") == 10
    assert resolve_stat({}, "STR") == 10


def test_proficiency_bonus():
    assert proficiency_bonus({"level": 1}) == 2
    assert proficiency_bonus({"level": 5}) == 3
    assert proficiency_bonus({"level": 9}) == 4
    assert proficiency_bonus({"level": 9, "proficiencyBonus": 6}) == 6


def test_modifier_stack_breakdown():
    stack = modifier_stack(FIGHTER, "STR", proficiency_applies=True, item_bonus=1, situational_mod=-2)
    assert stack.stat_mod == 3
    assert stack.proficiency == 3
    assert stack.total == 3 + 3 + 1 - 2


@pytest.mark.parametrize("dc,tier", [
    (4, "trivial"), (9, "very_easy"), (14, "easy"), (17, "moderate"), (19, "hard"), (25, "heroic"),
])
def test_difficulty_tier(dc, tier):
    assert difficulty_tier(dc) == tier


def test_advantage_sources_cancel():
    assert resolve_advantage(["flanking"], ["prone"]) == "straight"
    assert resolve_advantage(["flanking"], []) == "advantage"
    assert resolve_advantage(None, ["blinded"]) == "disadvantage"
    assert resolve_advantage(None, None) == "straight"


# ---------------------------------------------------------------------------
# resolve_roll
# ---------------------------------------------------------------------------

class TestResolveRoll:
    def test_total_is_result_plus_modifier(self) -> None:
        out = resolve_roll(
            character=FIGHTER, fate=FateEngineState(), rng=ScriptedRandom(11),
            roll_type="attack", stat="STR", difficulty=13,
        )
        roll = out.roll
        assert roll.result == 11
        assert roll.modifier == 3
        assert roll.total == roll.result + roll.modifier == 14
        assert roll.success is True
        assert roll.outcome.margin == 1
        assert roll.outcome.difficulty_tier == "easy"

    def test_advantage_keeps_higher(self) -> None:
        out = resolve_roll(
            character={}, fate=FateEngineState(), rng=ScriptedRandom(6, 15),
            advantage_sources=["ally"],
        )
        assert out.roll.raw_rolls == [6, 15]
        assert out.roll.natural == 15
        assert out.roll.flags.advantage

    def test_disadvantage_keeps_lower(self) -> None:
        out = resolve_roll(
            character={}, fate=FateEngineState(), rng=ScriptedRandom(6, 15),
            disadvantage_sources=["poisoned"],
        )
        assert out.roll.natural == 6
        assert out.roll.flags.disadvantage

    def test_momentum_applied_and_updated(self) -> None:
        fate = FateEngineState(momentum_counter=4)
        out = resolve_roll(character={}, fate=fate, rng=ScriptedRandom(5))
        assert out.roll.result == 9
        assert out.roll.flags.streak_breaker_active
        assert out.state.momentum_counter == 6

    def test_crit_resets_gap_counter(self) -> None:
        fate = FateEngineState(last_crit_turn_count=12)
        out = resolve_roll(character={}, fate=fate, rng=ScriptedRandom(20))
        assert out.roll.flags.critical
        assert out.roll.result == 20
        assert out.state.last_crit_turn_count == 0

    def test_gap_counter_increments(self) -> None:
        out = resolve_roll(character={}, fate=FateEngineState(last_crit_turn_count=3), rng=ScriptedRandom(10))
        assert out.state.last_crit_turn_count == 4

    def test_fumble_protection_reroll_recorded(self) -> None:
        fate = FateEngineState(momentum_counter=6)
        out = resolve_roll(character={}, fate=fate, rng=ScriptedRandom(1, 15))
        assert out.roll.raw_rolls == [1, 15]
        assert out.roll.flags.fumble_rerolled
        assert not out.roll.flags.fumble
        assert out.roll.natural == 15
        assert out.roll.result == 15
        assert out.roll.total == 15
        assert not out.roll.flags.critical
        # the rolled 1 still builds momentum
        assert out.state.momentum_counter == 8

    def test_fumble_keeps_natural_one(self) -> None:
        fate = FateEngineState(momentum_counter=2)
        out = resolve_roll(character={}, fate=fate, rng=ScriptedRandom(1))
        assert out.roll.flags.fumble
        assert out.roll.result == 1

    def test_player_supplied_natural(self) -> None:
        out = resolve_roll(character=FIGHTER, fate=FateEngineState(), rng=ScriptedRandom(), natural=17, stat="DEX")
        assert out.roll.raw_rolls == [17]
        assert out.roll.total == 18

    def test_invalid_natural_rejected(self) -> None:
        with pytest.raises(InvalidRequest):
            resolve_roll(character={}, fate=FateEngineState(), rng=ScriptedRandom(), natural=21)

    def test_invalid_difficulty_rejected(self) -> None:
        with pytest.raises(InvalidRequest):
            resolve_roll(character={}, fate=FateEngineState(), rng=ScriptedRandom(10), difficulty=0)

    def test_input_state_not_mutated(self) -> None:
        fate = FateEngineState(momentum_counter=2)
        resolve_roll(character={}, fate=fate, rng=ScriptedRandom(3))
        assert fate.momentum_counter == 2

    def test_seeded_sequences_stay_bounded(self) -> None:
        rng = random.Random(1234)
        fate = FateEngineState()
        for _ in range(500):
            out = resolve_roll(character={}, fate=fate, rng=rng)
            fate = out.state
            assert 0 <= fate.momentum_counter <= 10
            assert 1 <= out.roll.result <= 20
            if out.roll.natural == 20:
                assert out.roll.flags.critical


# ---------------------------------------------------------------------------
# Dice notation
# ---------------------------------------------------------------------------

def test_roll_dice_notation():
    roll = roll_dice("2d6+3", ScriptedRandom(4, 5), purpose="Damage")
    assert roll.type == "2d6"
    assert roll.raw_rolls == [4, 5]
    assert roll.result == 9
    assert roll.total == 12


def test_roll_dice_negative_modifier_and_default_count():
    roll = roll_dice("d8-1", ScriptedRandom(6))
    assert roll.type == "d8"
    assert roll.total == 5


def test_roll_dice_rejects_garbage():
    with pytest.raises(InvalidRequest):
        roll_dice("fireball", ScriptedRandom())


# ---------------------------------------------------------------------------
# Director mode
# ---------------------------------------------------------------------------

def test_director_trigger_hp_critical():
    assert director_trigger({"hp": {"current": 4, "max": 20}}) == "HP Critical"


def test_director_trigger_resource_exhaustion():
    assert director_trigger({"hp": {"current": 20, "max": 20}, "mana": {"current": 1, "max": 10}}) == "Resource Exhaustion"


def test_director_trigger_dead_character_is_not_hp_critical():
    assert director_trigger({"hp": {"current": 0, "max": 20}}) is None


def test_director_mode_fires_once_then_clears():
    hurt = {"hp": {"current": 2, "max": 20}}
    fate, message = check_director_mode(hurt, FateEngineState())
    assert fate.director_mode_cooldown
    assert message.startswith("[Director Mode] Difficulty adjusted - HP Critical detected.")

    fate, message = check_director_mode(hurt, fate)
    assert message is None
    assert fate.director_mode_cooldown

    fate, message = check_director_mode({"hp": {"current": 18, "max": 20}}, fate)
    assert message is None
    assert not fate.director_mode_cooldown
