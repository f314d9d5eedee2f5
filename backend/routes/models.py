"""Pydantic request models for API endpoints."""

from typing import Any, Literal

from pydantic import Field

from chronicle.models import ChatMessage, PendingRoll, WireModel


class CreateCampaign(WireModel):
    world: str
    owner: str | None = None
    title: str = ""
    state: dict[str, Any] = Field(default_factory=dict)


class TurnBody(WireModel):
    """A turn against a stored campaign. The campaign id comes from the path."""

    user_input: str = ""
    world_module: str | None = None
    current_state: dict[str, Any] = Field(default_factory=dict)
    chat_history: list[ChatMessage] = Field(default_factory=list)
    user_id: str | None = None
    byok_keys: dict[str, str] | None = None
    interactive_dice_rolls: bool = False
    show_suggested_choices: bool = True
    roll_result: int | None = None
    pending_roll: PendingRoll | None = None
    model_overrides: dict[str, str] | None = None


class KnowledgeDoc(WireModel):
    title: str
    content: str
    world: str = "global"
    target_model: Literal["brain", "voice", "both"] = "both"
    enabled: bool = True
