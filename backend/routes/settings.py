"""Health check and settings endpoints."""

from fastapi import APIRouter, Depends

from chronicle.storage import JsonStore

from .deps import get_store

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(store: JsonStore = Depends(get_store)):
    """Get global settings (models, costs, reviewer, voice, knowledge, prompts)."""
    return store.get_config()


@router.patch("/settings")
async def update_settings(body: dict, store: JsonStore = Depends(get_store)):
    """Update global settings (partial merge)."""
    return store.update_config(body)
