"""Campaign ledger: a denormalised, model-readable summary of game state.

The ledger is the only place the Brain and Reviewer are told what the
character actually owns. Anything not listed here doesn't exist yet.
"""

from __future__ import annotations

from typing import Any

OUTWORLDER_RANKS = ["Iron", "Bronze", "Silver", "Gold", "Diamond"]

DIFFICULTY_INSTRUCTIONS = {
    "story": "STORY MODE: Focus on narrative enjoyment. Be generous with success and soften failures into near misses.",
    "novice": "NOVICE: Provide helpful hints. Failures should teach, not punish.",
    "adventurer": "ADVENTURER: Balanced and fair. Success feels earned, failure has consequences but isn't devastating.",
    "hero": "HERO: No safety nets. Dice results are absolute. Victory is hard-won.",
    "legendary": "LEGENDARY: Unforgiving. Death is permanent. Every decision could be your last.",
}


def _name(entry: Any) -> str:
    if isinstance(entry, dict):
        return str(entry.get("name") or entry.get("title") or "Unknown")
    return str(entry)


def next_rank(rank: str) -> str:
    if rank not in OUTWORLDER_RANKS or rank == OUTWORLDER_RANKS[-1]:
        return rank
    return OUTWORLDER_RANKS[OUTWORLDER_RANKS.index(rank) + 1]


def xp_for_next_level(level: int) -> int:
    return (level + 1) * 1000


def _progression(char: dict[str, Any], world: str, state: dict[str, Any]) -> list[str]:
    level = char.get("level") or 1
    if world == "outworlder":
        rank = char.get("rank") or "Iron"
        return [
            f"• Rank: {rank} → Next: {next_rank(rank)}",
            f"• Rank Progress: {char.get('rankProgress', 0)}%",
        ]
    if world == "tactical":
        return [
            f"• Level: {level}",
            f"• XP: {char.get('experience', 0)} / {xp_for_next_level(level)}",
            f"• Stat Points Available: {char.get('statPoints', 0)}",
            f"• Job: {char.get('job') or 'None'}",
            f"• Gate Rank: {state.get('gateRank') or char.get('gateRank') or 'E'}",
        ]
    return [
        f"• Level: {level}",
        f"• XP: {char.get('experience', 0)} / {xp_for_next_level(level)}",
        f"• Proficiency Bonus: +{char.get('proficiencyBonus', 2)}",
    ]


def _abilities(abilities: list[Any]) -> list[str]:
    if not abilities:
        return ["• None yet"]
    lines = []
    for ability in abilities:
        line = f"• {_name(ability)}"
        if isinstance(ability, dict):
            if ability.get("type"):
                line += f" [{ability['type']}]"
            desc = ability.get("description")
            if desc:
                line += f" - {desc[:60]}{'...' if len(desc) > 60 else ''}"
        lines.append(line)
    return lines


def _inventory(items: list[Any]) -> list[str]:
    if not items:
        return ["• Empty"]
    lines = []
    for item in items:
        line = f"• {_name(item)}"
        if isinstance(item, dict):
            if item.get("quantity"):
                line += f" x{item['quantity']}"
            if item.get("equipped"):
                line += " [EQUIPPED]"
        lines.append(line)
    return lines


def _resources(char: dict[str, Any]) -> list[str]:
    lines = []
    for key, label in (("hp", "HP"), ("mana", "Mana"), ("stamina", "Stamina"), ("nanites", "Nanites")):
        pool = char.get(key)
        if isinstance(pool, dict):
            lines.append(f"• {label}: {pool.get('current', '?')}/{pool.get('max', '?')}")
    return lines or ["• None tracked"]


def _npcs(npcs: dict[str, Any]) -> list[str]:
    if not npcs:
        return ["• None yet"]
    lines = []
    for key, data in npcs.items():
        info = ""
        if isinstance(data, dict):
            info = data.get("info") or data.get("role") or ""
        lines.append(f"• {key}{' - ' + info if info else ''}")
    return lines


def _quests(quests: list[Any]) -> list[str]:
    active = [q for q in quests if isinstance(q, dict) and q.get("status") == "active"]
    if not active:
        return ["• None active"]
    lines = []
    for quest in active:
        remaining = sum(1 for o in quest.get("objectives") or [] if not o.get("completed"))
        lines.append(f"• {quest.get('title') or quest.get('name')} ({remaining} objectives remaining)")
    return lines


def build_campaign_ledger(state: dict[str, Any], world: str) -> str:
    char = state.get("character") or {}
    difficulty = state.get("difficulty") or "adventurer"

    lines = [
        "CAMPAIGN LEDGER (MANDATORY REFERENCE)",
        "",
        "CHARACTER:",
        f"• Name: {char.get('name') or 'Unknown'}",
    ]
    if char.get("essences"):
        lines.append(f"• Essences: {', '.join(_name(e) for e in char['essences'])}")
    for key, label in (("class", "Class"), ("race", "Race"), ("job", "Job")):
        if char.get(key):
            lines.append(f"• {label}: {char[key]}")

    lines += ["", "PROGRESSION:", *_progression(char, world, state)]
    lines += ["", "ABILITIES (ONLY REFERENCE THESE - DO NOT INVENT):", *_abilities(char.get("abilities") or state.get("abilities") or [])]
    lines += ["", "INVENTORY:", *_inventory(char.get("inventory") or state.get("inventory") or [])]
    lines += [f"• Gold: {state.get('gold', char.get('gold', 0))}"]
    lines += ["", "RESOURCES:", *_resources(char)]
    party = [f"• {_name(m)}" for m in state.get("partyMembers") or []]
    lines += ["", "PARTY:", *(party or ["• Travelling alone"])]
    lines += ["", "KEY NPCs MET:", *_npcs(state.get("keyNpcs") or {})]
    lines += ["", f"CURRENT LOCATION: {state.get('currentLocation') or 'Unknown'}"]
    lines += ["", "ACTIVE QUESTS:", *_quests(state.get("questLog") or [])]
    lines += [
        "",
        f"DIFFICULTY: {difficulty.upper()}",
        DIFFICULTY_INSTRUCTIONS.get(difficulty, DIFFICULTY_INSTRUCTIONS["adventurer"]),
        "",
        "Use ONLY the abilities, inventory, and NPCs listed above. "
        "If something isn't listed, it doesn't exist yet.",
    ]
    return "\n".join(lines)
