"""FastMCP server exposing knowledge lookup and fate checks as MCP tools.

Tools:
  - lookup_knowledge(world, role)    - reference documents a role would see
  - roll_check(stat_value, difficulty, ...) - one fate-resolved d20 check

The store is replaced via set_store() for tests, or opened on DATA_DIR
when run as __main__. roll_check uses a fresh fate record per call.

Usage:
    python -m backend.mcp_server
"""

import random

from mcp.server.fastmcp import FastMCP

from chronicle.fate import resolve_roll
from chronicle.models import FateEngineState
from chronicle.storage import JsonStore

mcp = FastMCP("chronicle")

_store: JsonStore | None = None
_rng = random.Random()

_LIMITS = {"brain": "brain_limit", "voice": "voice_limit"}


def set_store(store: JsonStore, rng: random.Random | None = None) -> None:
    """Replace the active store (used in tests)."""
    global _store, _rng
    _store = store
    if rng is not None:
        _rng = rng


@mcp.tool()
def lookup_knowledge(world: str, role: str = "brain") -> list[dict]:
    """Return the enabled reference documents for a world and role (brain or voice)."""
    if _store is None:
        return []
    limit = _store.get_config()["knowledge"].get(_LIMITS.get(role, "brain_limit"), 2)
    docs = []
    for doc in _store.list_knowledge():
        if doc.get("world") not in (world, "global") or not doc.get("enabled", True):
            continue
        if doc.get("targetModel", "both") not in (role, "both"):
            continue
        docs.append({"title": doc.get("title", ""), "content": doc["content"]})
    return docs[:limit]


@mcp.tool()
def roll_check(
    stat_value: int = 10,
    difficulty: int | None = None,
    roll_type: str = "skill",
    proficiency_bonus: int = 0,
    advantage: bool = False,
    disadvantage: bool = False,
) -> dict:
    """Roll a d20 check with the fate engine and return the annotated roll."""
    character = {"stats": {"check": stat_value}}
    if proficiency_bonus:
        character["proficiencyBonus"] = proficiency_bonus
    result = resolve_roll(
        character=character,
        fate=FateEngineState(),
        rng=_rng,
        roll_type=roll_type,
        stat="check",
        difficulty=difficulty,
        proficiency_applies=bool(proficiency_bonus),
        advantage_sources=["tool"] if advantage else None,
        disadvantage_sources=["tool"] if disadvantage else None,
    )
    return result.roll.model_dump(mode="json", by_alias=True, exclude_none=True)


if __name__ == "__main__":
    import os
    from pathlib import Path

    set_store(JsonStore(Path(os.getenv("DATA_DIR", "data"))))
    mcp.run()
