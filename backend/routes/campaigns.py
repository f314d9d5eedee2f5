"""Campaign CRUD, transcript, turn resolution and quest endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from chronicle import quests
from chronicle.models import TurnRequest
from chronicle.pipeline import TurnPipeline
from chronicle.storage import JsonStore

from .deps import get_pipeline, get_store
from .errors import status_for
from .models import CreateCampaign, TurnBody

logger = logging.getLogger(__name__)

router = APIRouter()


def _campaign_or_404(store: JsonStore, campaign_id: str) -> dict:
    campaign = store.get_campaign(campaign_id)
    if not campaign:
        raise HTTPException(404, "Campaign not found")
    return campaign


@router.post("/campaigns", status_code=201)
async def create_campaign(body: CreateCampaign, store: JsonStore = Depends(get_store)):
    """Start a campaign with an initial state."""
    return store.create_campaign(
        world=body.world, owner=body.owner, title=body.title, state=body.state,
    )


@router.get("/campaigns/{campaign_id}")
async def get_campaign(campaign_id: str, store: JsonStore = Depends(get_store)):
    """Get a campaign and its authoritative state."""
    return _campaign_or_404(store, campaign_id)


@router.get("/campaigns/{campaign_id}/messages")
async def get_messages(campaign_id: str, store: JsonStore = Depends(get_store)):
    """Get the campaign transcript."""
    _campaign_or_404(store, campaign_id)
    return store.get_messages(campaign_id)


@router.post("/campaigns/{campaign_id}/turns")
async def resolve_turn(
    campaign_id: str,
    body: TurnBody,
    store: JsonStore = Depends(get_store),
    pipeline: TurnPipeline = Depends(get_pipeline),
):
    """Resolve one player turn.

    Failures before persistence map to an error status. A turn that was saved
    but not charged still returns 200 so the client keeps the narrative.
    """
    campaign = store.get_campaign(campaign_id)
    fields = body.model_dump()
    fields["world_module"] = body.world_module or (campaign or {}).get("world") or ""
    request = TurnRequest(campaign_id=campaign_id, **fields)

    response = await pipeline.resolve_turn(request)
    content = response.model_dump(mode="json", by_alias=True)
    if not response.success and not response.saved:
        return JSONResponse(status_code=status_for(response.error_code), content=content)
    return content


async def _update_quests(
    store: JsonStore,
    pipeline: TurnPipeline,
    campaign_id: str,
    quest_id: str,
    operation,
) -> dict:
    campaign = _campaign_or_404(store, campaign_id)
    if pipeline.in_flight(campaign_id):
        raise HTTPException(409, "A turn is in progress for this campaign")
    try:
        state = operation(campaign.get("state") or {}, quest_id)
    except KeyError:
        raise HTTPException(404, "Quest not found in suggestions")
    return store.update_campaign_state(campaign_id, state)


@router.post("/campaigns/{campaign_id}/quests/{quest_id}/accept")
async def accept_quest(
    campaign_id: str,
    quest_id: str,
    store: JsonStore = Depends(get_store),
    pipeline: TurnPipeline = Depends(get_pipeline),
):
    """Move a suggested quest into the quest log."""
    return await _update_quests(store, pipeline, campaign_id, quest_id, quests.accept_quest)


@router.post("/campaigns/{campaign_id}/quests/{quest_id}/decline")
async def decline_quest(
    campaign_id: str,
    quest_id: str,
    store: JsonStore = Depends(get_store),
    pipeline: TurnPipeline = Depends(get_pipeline),
):
    """Drop a suggested quest."""
    return await _update_quests(store, pipeline, campaign_id, quest_id, quests.decline_quest)
