"""Pipeline orchestrator - resolves one player turn end-to-end.

Turn flow:
  1. Validating   - required request fields, no other turn in flight for
                    the campaign.
  2. Resolving    - campaign state, world, model routes, turn cost, advisory
                    balance check. Brain and Voice knowledge fetched together.
  3. Interpreting - Brain call. A pending roll in interactive mode ends the
                    turn here: nothing is merged, saved or charged.
  4. Fate         - player-supplied or auto-resolved rolls go through the
                    fate resolver; Brain dice totals are normalised.
  5. Merging      - Brain delta (untrusted) then fate/director delta (trusted).
  6. Narrating    - Voice call; falls back to the Brain's cue text.
  7. Reviewing    - best-effort corrections, merged with the same policies.
  8. Persisting   - state + transcript saved. Anonymous turns skip 8 and 9.
  9. Charging     - balance re-checked and debited in one user transaction.

Stages 8 and 9 run in a shielded task, so cancelling the caller after
persistence starts cannot leave a charge without a save.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
from pydantic import ValidationError

from chronicle.brain import RulesInterpreter
from chronicle.economy import charge_turn, check_balance, is_free, resolve_turn_cost
from chronicle.errors import (
    ChronicleError,
    ConfigurationError,
    InvalidRequest,
    ProviderFailure,
    TurnInProgress,
)
from chronicle.fate import check_director_mode, resolve_roll
from chronicle.knowledge import KnowledgeBase
from chronicle.llm import LLMProvider, ModelRoute, build_provider, resolve_model
from chronicle.merge import diff_state, merge_state
from chronicle.models import (
    BrainResult,
    DiceRoll,
    FateEngineState,
    NarrativeCue,
    PendingRoll,
    TokenUsage,
    TurnRequest,
    TurnResponse,
)
from chronicle.prompts import PromptError
from chronicle.reviewer import ConsistencyReviewer
from chronicle.storage import JsonStore, utc_now
from chronicle.voice import Narrator, fallback_narrative

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[str, ModelRoute], LLMProvider]

WORLD_ALIASES = {"shadowMonarch": "tactical"}


class Stage(str, Enum):
    VALIDATING = "validating"
    RESOLVING = "resolving"
    INTERPRETING = "interpreting"
    AWAITING_ROLL = "awaiting_roll"
    FATE = "fate"
    MERGING = "merging"
    NARRATING = "narrating"
    REVIEWING = "reviewing"
    PERSISTING = "persisting"
    CHARGING = "charging"
    DONE = "done"


def default_provider_factory(role: str, route: ModelRoute) -> LLMProvider:
    return build_provider(route)


@dataclass
class _Turn:
    """Everything the commit stages need, gathered before persistence."""

    request: TurnRequest
    world: str
    persisted: bool
    cost: int
    narrative: str
    initial_state: dict[str, Any]
    final_state: dict[str, Any]
    brain: BrainResult
    dice_rolls: list[DiceRoll]
    system_messages: list[str]
    usage: dict[str, TokenUsage] = field(default_factory=dict)
    voice_model: str = ""


class TurnPipeline:
    """Resolves turns against an injected store, providers and RNG."""

    def __init__(
        self,
        *,
        store: JsonStore,
        secrets: dict[str, str] | None = None,
        provider_factory: ProviderFactory = default_provider_factory,
        rng: random.Random | None = None,
        knowledge: KnowledgeBase | None = None,
    ) -> None:
        self._store = store
        self._secrets = secrets or {}
        self._provider_factory = provider_factory
        self._rng = rng or random.Random()
        if knowledge is None:
            ttl = store.get_config()["knowledge"].get("cache_ttl_seconds", 600)
            knowledge = KnowledgeBase(store, ttl_seconds=ttl)
        self._knowledge = knowledge
        self._in_flight: set[str] = set()

    def _enter(self, stage: Stage, campaign_id: str) -> None:
        logger.info("turn campaign=%s stage=%s", campaign_id, stage.value)

    @property
    def knowledge(self) -> KnowledgeBase:
        return self._knowledge

    def in_flight(self, campaign_id: str) -> bool:
        return campaign_id in self._in_flight

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def resolve_turn(self, request: TurnRequest) -> TurnResponse:
        """Resolve one turn. Failures come back as ``success=False`` responses."""
        try:
            self._enter(Stage.VALIDATING, request.campaign_id)
            self._validate(request)
        except ChronicleError as e:
            return self._failure(e)

        campaign_id = request.campaign_id
        if campaign_id in self._in_flight:
            return self._failure(TurnInProgress(campaign_id))
        self._in_flight.add(campaign_id)
        handed_off = False
        try:
            outcome = await self._prepare(request)
            if isinstance(outcome, TurnResponse):
                return outcome

            commit = asyncio.ensure_future(self._commit(outcome))
            handed_off = True
            commit.add_done_callback(lambda task: self._release(campaign_id, task))
            return await asyncio.shield(commit)
        except ChronicleError as e:
            return self._failure(e)
        finally:
            if not handed_off:
                self._in_flight.discard(campaign_id)

    def _release(self, campaign_id: str, task: asyncio.Future) -> None:
        self._in_flight.discard(campaign_id)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("commit for %s ended with %r", campaign_id, task.exception())

    def _failure(self, error: ChronicleError) -> TurnResponse:
        logger.warning("turn failed code=%s: %s", error.code, error.message)
        return TurnResponse(success=False, error_code=error.code, error=error.message)

    def _validate(self, request: TurnRequest) -> None:
        missing = [
            name for name, value in (
                ("campaignId", request.campaign_id),
                ("userInput", request.user_input if request.roll_result is None else "roll"),
                ("worldModule", request.world_module),
            )
            if not (value or "").strip()
        ]
        if missing:
            raise InvalidRequest(f"Missing required fields: {', '.join(missing)}")

    # ------------------------------------------------------------------
    # Stages before persistence
    # ------------------------------------------------------------------

    def _route(self, ui_model: str, request: TurnRequest) -> ModelRoute:
        return resolve_model(ui_model, byok_keys=request.byok_keys, secrets=self._secrets)

    async def _prepare(self, request: TurnRequest) -> _Turn | TurnResponse:
        campaign_id = request.campaign_id

        # 2. Resolving
        self._enter(Stage.RESOLVING, campaign_id)
        config = self._store.get_config()
        persisted = request.user_id is not None
        state = dict(request.current_state)
        world = request.world_module
        turn_number = request.turn_number or len(request.chat_history) // 2 + 1
        if persisted:
            campaign = self._store.get_campaign(campaign_id)
            if campaign is None:
                raise InvalidRequest(f"Unknown campaign {campaign_id}")
            if campaign.get("owner") and campaign["owner"] != request.user_id:
                raise InvalidRequest(f"Campaign {campaign_id} does not belong to this user")
            state = campaign.get("state") or {}
            world = campaign.get("world") or world
            turn_number = campaign.get("turnNumber", 0) + 1
        world = WORLD_ALIASES.get(world, world)

        models = {**config["models"], **(request.model_overrides or {})}
        brain_route = self._route(models["brain"], request)
        voice_route = self._route(models["voice"], request)
        reviewer_route = None
        if config["reviewer"].get("enabled", True):
            try:
                reviewer_route = self._route(models.get("reviewer") or models["brain"], request)
            except ConfigurationError as e:
                logger.warning("reviewer disabled for this turn: %s", e.message)
        logger.info(
            "routes brain=%s/%s voice=%s/%s",
            brain_route.provider, brain_route.model, voice_route.provider, voice_route.model,
        )

        cost = resolve_turn_cost(config, voice_route.ui_model, voice_route.model)
        if persisted:
            check_balance(self._store, request.user_id, cost)
            user = self._store.get_user(request.user_id) or {}
            if is_free(user.get("tier")):
                cost = 0

        limits = config["knowledge"]
        brain_docs, voice_docs = await asyncio.gather(
            self._knowledge.fetch(world, "brain", limits.get("brain_limit", 2)),
            self._knowledge.fetch(world, "voice", limits.get("voice_limit", 3)),
        )

        # 3. Interpreting
        self._enter(Stage.INTERPRETING, campaign_id)
        pending = request.pending_roll or self._stored_pending_roll(state)
        if request.roll_result is not None and pending is None:
            pending = PendingRoll(purpose="Action")

        interpreter = RulesInterpreter(
            self._provider_factory("brain", brain_route),
            templates=config.get("prompts"),
            world_rules=config.get("world_rules"),
        )
        brain_call = await interpreter.interpret(
            user_input=request.user_input,
            state=state,
            world=world,
            history=request.chat_history,
            knowledge=brain_docs,
            interactive_dice=request.interactive_dice_rolls,
            show_choices=request.show_suggested_choices,
            roll_result=request.roll_result,
            pending_roll=pending if request.roll_result is not None else None,
        )
        brain = brain_call.result
        usage = {brain_route.model: brain_call.usage}

        if brain.pending_roll is not None and request.interactive_dice_rolls:
            self._enter(Stage.AWAITING_ROLL, campaign_id)
            return TurnResponse(
                success=True,
                narrative=brain.narrative_cue or "",
                system_messages=brain.system_messages,
                requires_user_input=True,
                pending_roll=brain.pending_roll,
                turn_cost=0,
            )

        # 4. Fate
        self._enter(Stage.FATE, campaign_id)
        character = state.get("character") or {}
        fate = self._fate_state(state)
        dice_rolls = [self._normalize_roll(r) for r in brain.dice_rolls]

        if request.roll_result is not None:
            resolved = self._resolve_pending(pending, character, fate, world, natural=request.roll_result)
            fate = resolved.state
            dice_rolls = [
                r for r in dice_rolls
                if not self._reports_player_roll(r, request.roll_result, pending)
            ]
            dice_rolls.append(resolved.roll)

        if brain.pending_roll is not None:
            resolved = self._resolve_pending(brain.pending_roll, character, fate, world)
            fate = resolved.state
            dice_rolls.append(resolved.roll)
            brain.requires_user_input = brain.pending_choice is not None
            brain.pending_roll = None

        # 5. Merging
        self._enter(Stage.MERGING, campaign_id)
        merged = merge_state(state, brain.state_updates)
        fate, director_message = check_director_mode(merged.get("character") or {}, fate)
        system_messages = list(brain.system_messages)
        if director_message:
            system_messages.append(director_message)
        engine_delta: dict[str, Any] = {"fateEngine": fate.model_dump()}
        if "pendingRoll" in merged:
            engine_delta["pendingRoll"] = None
        merged = merge_state(merged, engine_delta, trusted=True)

        # 6. Narrating
        self._enter(Stage.NARRATING, campaign_id)
        cues = brain.narrative_cues or [NarrativeCue(content=brain.narrative_cue or "")]
        narrator = Narrator(
            self._provider_factory("voice", voice_route),
            templates=config.get("prompts"),
            min_words=config["voice"].get("min_words", 150),
            max_words=config["voice"].get("max_words", 250),
        )
        try:
            voice_call = await narrator.narrate(
                cues=cues,
                dice_rolls=dice_rolls,
                state_changes=brain.state_updates,
                system_messages=system_messages,
                history=request.chat_history,
                world=world,
                knowledge=voice_docs,
                character=merged.get("character"),
            )
            narrative = voice_call.narrative
            usage[voice_route.model] = usage.get(voice_route.model, TokenUsage()) + voice_call.usage
        except (ProviderFailure, PromptError, httpx.HTTPError) as e:
            logger.warning("voice failed, using brain cue text: %s", e, exc_info=True)
            narrative = ""
        if not narrative:
            narrative = fallback_narrative(brain.narrative_cues, brain.narrative_cue)

        # 7. Reviewing
        self._enter(Stage.REVIEWING, campaign_id)
        if reviewer_route is not None:
            merged = await self._review(
                reviewer_route, config, narrative, merged, world, turn_number, usage,
            )

        return _Turn(
            request=request,
            world=world,
            persisted=persisted,
            cost=cost,
            narrative=narrative,
            initial_state=state,
            final_state=merged,
            brain=brain,
            dice_rolls=dice_rolls,
            system_messages=system_messages,
            usage=usage,
            voice_model=voice_route.model,
        )

    def _stored_pending_roll(self, state: dict[str, Any]) -> PendingRoll | None:
        stored = state.get("pendingRoll")
        if not isinstance(stored, dict):
            return None
        try:
            return PendingRoll.model_validate(stored)
        except ValidationError:
            logger.warning("ignoring malformed stored pendingRoll: %r", stored)
            return None

    def _fate_state(self, state: dict[str, Any]) -> FateEngineState:
        stored = state.get("fateEngine")
        if not isinstance(stored, dict):
            return FateEngineState()
        try:
            return FateEngineState.model_validate(stored)
        except ValidationError:
            logger.warning("resetting malformed fateEngine state: %r", stored)
            return FateEngineState()

    def _resolve_pending(
        self,
        pending: PendingRoll,
        character: dict[str, Any],
        fate: FateEngineState,
        world: str,
        natural: int | None = None,
    ):
        # A flat Brain modifier only counts when there is no stat to derive one from
        flat = (pending.modifier or 0) if not pending.stat else 0
        difficulty = pending.difficulty
        if difficulty is not None and difficulty < 1:
            logger.warning("ignoring non-positive difficulty %r for %r", difficulty, pending.purpose)
            difficulty = None
        return resolve_roll(
            character=character,
            fate=fate,
            rng=self._rng,
            roll_type=pending.roll_type,
            stat=pending.stat,
            difficulty=difficulty,
            proficiency_applies=pending.proficiency_applies,
            item_bonus=pending.item_bonus,
            situational_mod=pending.situational_mod + flat,
            advantage_sources=pending.advantage_sources,
            disadvantage_sources=pending.disadvantage_sources,
            natural=natural,
            purpose=pending.purpose,
            world=world,
        )

    @staticmethod
    def _reports_player_roll(roll: DiceRoll, natural: int, pending: PendingRoll) -> bool:
        """A Brain d20 echoing the die the player already rolled."""
        if roll.type.lower() not in ("d20", "1d20"):
            return False
        return roll.result == natural or (roll.purpose is not None and roll.purpose == pending.purpose)

    @staticmethod
    def _normalize_roll(roll: DiceRoll) -> DiceRoll:
        modifier = roll.modifier or 0
        update: dict[str, Any] = {"modifier": modifier, "total": roll.result + modifier}
        if roll.difficulty is not None:
            update["success"] = roll.result + modifier >= roll.difficulty
        return roll.model_copy(update=update)

    async def _review(
        self,
        route: ModelRoute,
        config: dict[str, Any],
        narrative: str,
        state: dict[str, Any],
        world: str,
        turn_number: int,
        usage: dict[str, TokenUsage],
    ) -> dict[str, Any]:
        settings = config["reviewer"]
        reviewer = ConsistencyReviewer(
            self._provider_factory("reviewer", route),
            enabled=settings.get("enabled", True),
            frequency=settings.get("frequency", 1),
            templates=config.get("prompts"),
        )
        try:
            outcome = await reviewer.review(
                narrative=narrative, state=state, world=world, turn_number=turn_number,
            )
        except Exception:
            # Never fails the turn
            logger.warning("reviewer failed, keeping unreviewed state", exc_info=True)
            return state
        if outcome.skipped:
            return state
        usage[route.model] = usage.get(route.model, TokenUsage()) + outcome.usage
        return merge_state(state, outcome.delta)

    # ------------------------------------------------------------------
    # Persisting and charging
    # ------------------------------------------------------------------

    async def _commit(self, turn: _Turn) -> TurnResponse:
        request = turn.request
        applied = diff_state(turn.initial_state, turn.final_state)
        response = TurnResponse(
            success=True,
            narrative=turn.narrative,
            state_updates=applied,
            dice_rolls=turn.dice_rolls,
            system_messages=turn.system_messages,
            requires_user_input=turn.brain.requires_user_input,
            pending_choice=turn.brain.pending_choice,
            turn_cost=0,
        )
        if not turn.persisted:
            self._enter(Stage.DONE, request.campaign_id)
            return response

        # 8. Persisting
        self._enter(Stage.PERSISTING, request.campaign_id)
        now = utc_now()
        messages = [{"role": "user", "content": request.user_input, "ts": now}]
        messages += [{"role": "system", "content": m, "ts": now} for m in turn.system_messages]
        messages.append({
            "role": "assistant",
            "content": turn.narrative,
            "ts": now,
            "metadata": {"voiceModel": turn.voice_model, "turnCost": turn.cost},
        })
        await asyncio.to_thread(
            self._store.save_turn, request.campaign_id, turn.final_state, messages,
        )
        response.saved = True

        # 9. Charging
        self._enter(Stage.CHARGING, request.campaign_id)
        try:
            remaining = await charge_turn(self._store, request.user_id, turn.cost, turn.usage)
        except (ChronicleError, KeyError, OSError) as e:
            error = e if isinstance(e, ChronicleError) else ChronicleError(str(e))
            logger.error(
                "campaign %s saved but not charged: %s", request.campaign_id, error.message,
            )
            response.success = False
            response.error_code = error.code
            response.error = f"Your progress was saved but the turn could not be charged: {error.message}"
            return response

        response.charged = True
        response.turn_cost = turn.cost
        response.remaining_turns = remaining
        self._enter(Stage.DONE, request.campaign_id)
        return response
