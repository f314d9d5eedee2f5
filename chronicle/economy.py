"""Turn economy: cost lookup, advisory balance check, transactional charge."""

from __future__ import annotations

import logging
from typing import Any

from chronicle.errors import InsufficientBalance, InvalidRequest
from chronicle.models import TokenUsage
from chronicle.storage import JsonStore

logger = logging.getLogger(__name__)

FREE_TIERS = frozenset({"legendary"})


def resolve_turn_cost(config: dict[str, Any], ui_model: str, resolved_model: str) -> int:
    """Cost by UI model id, then by resolved provider id, then the default."""
    costs = config.get("model_costs") or {}
    if ui_model in costs:
        return int(costs[ui_model])
    if resolved_model in costs:
        return int(costs[resolved_model])
    default = int(config.get("default_turn_cost", 10))
    logger.debug("no cost configured for %s / %s, using default %d", ui_model, resolved_model, default)
    return default


def usage_key(model: str) -> str:
    """Model ids are stored as record keys, so dots are not allowed."""
    return model.replace(".", "_")


def is_free(tier: str | None) -> bool:
    return tier in FREE_TIERS


def check_balance(store: JsonStore, user_id: str, cost: int) -> int:
    """Advisory pre-check before any work. Returns the current balance.

    The authoritative check happens again inside ``charge_turn``.
    """
    user = store.get_user(user_id)
    if user is None:
        raise InvalidRequest(f"Unknown user {user_id}")
    balance = int(user.get("turns", 0))
    if not is_free(user.get("tier")) and balance < cost:
        raise InsufficientBalance(balance, cost)
    return balance


async def charge_turn(
    store: JsonStore,
    user_id: str,
    cost: int,
    usage_by_model: dict[str, TokenUsage],
) -> int:
    """Re-check the balance and debit it in one user transaction.

    Returns the remaining balance. Usage counters are bumped even for free
    tiers; only the debit is skipped.
    """
    async with store.user_transaction(user_id) as user:
        balance = int(user.get("turns", 0))
        free = is_free(user.get("tier"))
        if not free and balance < cost:
            raise InsufficientBalance(balance, cost)
        if not free:
            user["turns"] = balance - cost
        user["turnsUsed"] = int(user.get("turnsUsed", 0)) + 1

        token_usage = user.setdefault("tokenUsage", {})
        for model, usage in usage_by_model.items():
            counters = token_usage.setdefault(usage_key(model), {
                "promptTokens": 0, "completionTokens": 0, "totalTokens": 0,
            })
            counters["promptTokens"] += usage.prompt_tokens
            counters["completionTokens"] += usage.completion_tokens
            counters["totalTokens"] += usage.total_tokens

        remaining = int(user["turns"])
    logger.info("charged user=%s cost=%d remaining=%d free=%s", user_id, 0 if free else cost, remaining, free)
    return remaining
