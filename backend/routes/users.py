"""User balance and usage endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from chronicle.storage import JsonStore

from .deps import get_store

router = APIRouter()


@router.get("/users/{user_id}")
async def get_user(user_id: str, store: JsonStore = Depends(get_store)):
    """Get a user's tier, remaining turns and token usage."""
    user = store.get_user(user_id)
    if not user:
        raise HTTPException(404, "User not found")
    return user
