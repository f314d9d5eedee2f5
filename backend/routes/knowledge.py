"""Reference-document endpoints."""

from fastapi import APIRouter, Depends

from chronicle.pipeline import TurnPipeline
from chronicle.storage import JsonStore

from .deps import get_pipeline, get_store
from .models import KnowledgeDoc

router = APIRouter()


@router.get("/knowledge")
async def list_knowledge(store: JsonStore = Depends(get_store)):
    """List all reference documents."""
    return store.list_knowledge()


@router.post("/knowledge", status_code=201)
async def add_knowledge(
    body: KnowledgeDoc,
    store: JsonStore = Depends(get_store),
    pipeline: TurnPipeline = Depends(get_pipeline),
):
    """Add a reference document. Cached lookups are dropped so it shows up at once."""
    doc = store.add_knowledge(
        title=body.title,
        content=body.content,
        world=body.world,
        target_model=body.target_model,
        enabled=body.enabled,
    )
    pipeline.knowledge.clear()
    return doc
