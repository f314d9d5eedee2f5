"""Handlebars prompt rendering for the pipeline roles (brain, voice, reviewer).

Each role has a default template below. Stored config may override any of
them per role (``config["prompts"][role]``); overrides see the same context.
Values are inserted with triple-stash ``{{{ }}}`` so JSON and quotes survive.
"""

from collections.abc import Callable
from typing import Any

import pybars


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}} - iterate over the first N items."""
    result = []
    for item in list(items or [])[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_upper(this, value):
    """{{upper value}} - upper-case a string."""
    return str(value or "").upper()


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "upper": _helper_upper,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── World flavour ────────────────────────────────────────

WORLD_STAT_CONTEXT: dict[str, str] = {
    "classic": "STATS: Use D&D 5E stats: STR, DEX, CON, INT, WIS, CHA.",
    "outworlder": "STATS: Use Outworlder stats ONLY: power, speed, spirit, recovery. Never use D&D stat names.",
    "tactical": "STATS: Use Tactical stats ONLY: strength, agility, vitality, intelligence, perception. Never use D&D stat names.",
}

VOICE_STYLES: dict[str, str] = {
    "classic": (
        "You are the NARRATOR for a classic high fantasy RPG.\n"
        "Write in second person with vivid, weighty prose. Give NPCs distinct voices.\n"
        "TONE: Epic, heroic, occasionally humorous."
    ),
    "outworlder": (
        "You are the NARRATOR for a LitRPG adventure.\n"
        "Write in second person with snarky, modern sensibilities. Format system messages "
        "as boxed alerts. Make abilities feel impactful and visually distinct.\n"
        "TONE: Witty, irreverent, action-packed, with genuine emotional moments."
    ),
    "tactical": (
        "You are the NARRATOR for a tactical power-progression adventure.\n"
        "Write in second person. Format system notifications with brackets: [SYSTEM MESSAGE]. "
        "Combat should feel fast and precise.\n"
        "TONE: Intense, dramatic, occasionally ominous."
    ),
}

DEFAULT_VOICE_STYLE = VOICE_STYLES["classic"]


# ── Default templates ────────────────────────────────────

BRAIN_TEMPLATE = """\
{{#if dice_header}}
CRITICAL RULE - INTERACTIVE DICE MODE IS ACTIVE
When ANY action requires a dice roll you MUST set "pendingRoll" (type, purpose, modifier, stat, difficulty),
set "requiresUserInput": true, leave "diceRolls" empty and stop before describing the outcome.

{{/if}}
{{{world_stats}}}

You are the RULES ENGINE of a narrative role-playing game. You process game mechanics, not story.
{{#if knowledge}}

REFERENCE MATERIALS (use for world context and lore):
---
{{#each knowledge}}
{{{this}}}
---
{{/each}}
{{/if}}
{{#if custom_rules}}

WORLD-SPECIFIC RULES (PRIORITIZE THESE):
---
{{{custom_rules}}}
---
{{/if}}
{{#if essence_override}}

{{{essence_override}}}
{{/if}}

INSTRUCTIONS:
1. Respond with valid JSON only. Put changed game state fields in "stateUpdates".
2. {{{dice_rules}}}
3. List-valued fields (inventory, partyMembers, abilities) change ONLY through {"added": [...], "removed": [...]}.
4. Provide "narrativeCues" for the storyteller, not full prose.
5. Put level ups, achievements and warnings in "systemMessages".
6. {{{choices_rule}}}
{{#if roll_result_rule}}

{{{roll_result_rule}}}
{{/if}}
{{#if active_quest}}

ACTIVE QUEST:
Title: {{{active_quest.title}}}
Description: {{{active_quest.description}}}
Objectives:
{{#each active_quest.objectives}}
  [{{#if completed}}x{{else}} {{/if}}] {{{text}}}
{{/each}}
{{/if}}

{{{ledger}}}

CURRENT GAME STATE (RAW):
{{{state_json}}}

Respond with JSON only. No markdown, no explanation.
"""

BRAIN_USER_TEMPLATE = """\
PLAYER ACTION: {{{user_input}}}

Process this action according to the game rules. Update the game state and provide narrative cues for the storyteller.
Respond with VALID JSON matching this structure:
{"stateUpdates": {}, "narrativeCues": [{"type": "action", "content": "...", "emotion": "neutral"}], "diceRolls": [], "systemMessages": [], "narrativeCue": "...", "requiresUserInput": false, "pendingRoll": null, "pendingChoice": null}
"""

VOICE_TEMPLATE = """\
{{{style}}}
{{#if knowledge}}

REFERENCE MATERIALS (use for world context, tone and lore):
---
{{#each knowledge}}
{{{this}}}
---
{{/each}}
{{/if}}
{{#if character_name}}

The player character is {{{character_name}}}.
{{/if}}

LENGTH REQUIREMENT:
Your response MUST be between {{min_words}} and {{max_words}} words. Keep it focused on one strong scene beat.

STORYTELLING RULES:
1. Expand the engine's narrative cues into immersive second-person prose.
2. Incorporate dice roll results naturally.
3. Show, don't tell. Be vivid but concise.
4. Never discuss game mechanics directly, except to echo system messages.
"""

VOICE_USER_TEMPLATE = """\
The game engine has processed the following:
{{#if dice_rolls}}

DICE ROLLS:
{{#each dice_rolls}}
- {{{purpose}}}: {{{type}}} rolled {{result}}{{#if modifier}} + {{modifier}}{{/if}} = {{total}}
{{/each}}
{{/if}}

NARRATIVE CUES:
{{#each cues}}
- [{{upper type}}{{#if emotion}} / {{{emotion}}}{{/if}}] {{{content}}}
{{/each}}
{{#if state_changes}}

STATE CHANGES:
{{#each state_changes}}
- {{{key}}}: {{{value}}}
{{/each}}
{{/if}}
{{#if system_messages}}

SYSTEM MESSAGES:
{{#each system_messages}}
- {{{this}}}
{{/each}}
{{/if}}

Write a concise narrative ({{min_words}}-{{max_words}} words) that captures the key moment.
"""

REVIEWER_TEMPLATE = """\
You are a STATE CONSISTENCY REVIEWER for a narrative role-playing game.
Compare the narrative against the current state and report ONLY changes the narrative clearly implies
but the state does not yet reflect. Report nothing that is already reflected.

{{{ledger}}}

CURRENT STATE:
{{{state_json}}}

Respond with JSON only:
{"corrections": {"inventory": {"added": [], "removed": []}, "hp": {"current": 0, "max": 0}, "mana": {"current": 0, "max": 0},
"nanites": {"current": 0, "max": 0}, "fatigue": 0, "powers": {"added": [], "removed": []},
"partyMembers": {"joined": [], "left": []}, "gold": 0, "experience": 0, "questProgress": {}},
"reasoning": "..."}
Omit any field that needs no correction.
"""

REVIEWER_USER_TEMPLATE = """\
Review this narrative and extract any state changes. Respond with JSON only:

{{{narrative}}}
"""

DEFAULT_TEMPLATES: dict[str, str] = {
    "brain": BRAIN_TEMPLATE,
    "brain_user": BRAIN_USER_TEMPLATE,
    "voice": VOICE_TEMPLATE,
    "voice_user": VOICE_USER_TEMPLATE,
    "reviewer": REVIEWER_TEMPLATE,
    "reviewer_user": REVIEWER_USER_TEMPLATE,
}


def template_for(role: str, overrides: dict[str, str] | None = None) -> str:
    """Return the override for ``role`` if one is configured, else the default."""
    if overrides and overrides.get(role):
        return overrides[role]
    try:
        return DEFAULT_TEMPLATES[role]
    except KeyError:
        raise PromptError(f"No template for role {role!r}") from None


def render_role(role: str, context: dict[str, Any], overrides: dict[str, str] | None = None) -> str:
    return render_prompt(template_for(role, overrides), context).strip() + "\n"
