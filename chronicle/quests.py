"""Quest log operations.

Every operation builds a delta and folds it in with ``merge_state``, so quest
changes obey the same field policies as model output: ``questLog`` and
``suggestedQuests`` merge by quest id. Removals and promotion from
suggestions to the log are trusted writes, made only by ``accept_quest``
and ``decline_quest``.
"""

from __future__ import annotations

import logging
from typing import Any

from chronicle.merge import merge_state
from chronicle.models import Quest, QuestStatus
from chronicle.storage import utc_now

logger = logging.getLogger(__name__)


def _dump(quest: Quest) -> dict[str, Any]:
    return quest.model_dump(by_alias=True, exclude_none=True)


def _find(quests: list[dict[str, Any]] | None, quest_id: str) -> dict[str, Any] | None:
    for quest in quests or []:
        if quest.get("id") == quest_id:
            return quest
    return None


def add_quest(state: dict[str, Any], quest: Quest | dict[str, Any]) -> dict[str, Any]:
    """Add to the quest log; becomes active if nothing else is."""
    quest = Quest.model_validate(quest)
    if _find(state.get("questLog"), quest.id):
        logger.warning("quest %s already in quest log", quest.id)
        return state
    if quest.status == "active" and not quest.started_at:
        quest.started_at = utc_now()
    delta: dict[str, Any] = {"questLog": [_dump(quest)]}
    if not state.get("activeQuestId"):
        delta["activeQuestId"] = quest.id
    return merge_state(state, delta)


def update_objective(
    state: dict[str, Any],
    quest_id: str,
    objective_id: str,
    completed: bool,
) -> dict[str, Any]:
    quest = _find(state.get("questLog"), quest_id)
    if quest is None:
        logger.warning("quest %s not found in quest log", quest_id)
        return state
    objectives = [
        {**o, "completed": completed} if o.get("id") == objective_id else o
        for o in quest.get("objectives") or []
    ]
    return merge_state(state, {"questLog": [{"id": quest_id, "objectives": objectives}]})


def transition_delta(state: dict[str, Any], quest_id: str, status: QuestStatus) -> dict[str, Any]:
    """Delta that moves a logged quest to ``status`` and stamps the time."""
    update: dict[str, Any] = {"id": quest_id, "status": status}
    if status == "completed":
        update["completedAt"] = utc_now()
    elif status == "failed":
        update["failedAt"] = utc_now()
    delta: dict[str, Any] = {"questLog": [update]}
    if status != "active" and state.get("activeQuestId") == quest_id:
        delta["activeQuestId"] = None
    return delta


def set_quest_status(state: dict[str, Any], quest_id: str, status: QuestStatus) -> dict[str, Any]:
    if _find(state.get("questLog"), quest_id) is None:
        logger.warning("quest %s not found in quest log", quest_id)
        return state
    return merge_state(state, transition_delta(state, quest_id, status))


def get_active_quest(state: dict[str, Any]) -> dict[str, Any] | None:
    active_id = state.get("activeQuestId")
    if not active_id:
        return None
    return _find(state.get("questLog"), active_id)


def set_active_quest(state: dict[str, Any], quest_id: str) -> dict[str, Any]:
    if _find(state.get("questLog"), quest_id) is None:
        logger.warning("quest %s not found in quest log", quest_id)
        return state
    return merge_state(state, {"activeQuestId": quest_id})


def add_generated_quests(state: dict[str, Any], quests: list[Quest | dict[str, Any]]) -> dict[str, Any]:
    """Offer quests to the player. They stay in ``suggestedQuests`` until accepted."""
    known = {q.get("id") for q in (state.get("questLog") or []) + (state.get("suggestedQuests") or [])}
    fresh = []
    for quest in quests:
        quest = Quest.model_validate(quest)
        if quest.id not in known:
            fresh.append(_dump(quest))
    if not fresh:
        return state
    return merge_state(state, {"suggestedQuests": {"added": fresh}})


def accept_quest(state: dict[str, Any], quest_id: str) -> dict[str, Any]:
    """Move a suggested quest into the quest log as active."""
    suggested = _find(state.get("suggestedQuests"), quest_id)
    if suggested is None:
        raise KeyError(quest_id)
    quest = {**suggested, "status": "active", "startedAt": utc_now()}
    delta: dict[str, Any] = {
        "suggestedQuests": {"removed": [quest_id]},
        "questLog": [quest],
    }
    if not state.get("activeQuestId"):
        delta["activeQuestId"] = quest_id
    return merge_state(state, delta, trusted=True)


def decline_quest(state: dict[str, Any], quest_id: str) -> dict[str, Any]:
    if _find(state.get("suggestedQuests"), quest_id) is None:
        raise KeyError(quest_id)
    return merge_state(state, {"suggestedQuests": {"removed": [quest_id]}}, trusted=True)
