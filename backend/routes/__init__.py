"""FastAPI API endpoints under /api.

Endpoint groups: health + settings, campaigns (state, transcript, turns,
quest accept/decline), users, knowledge. Turn failures come back with the
pipeline's error code mapped onto an HTTP status (see ``errors``).
"""

from fastapi import APIRouter

from .campaigns import router as campaigns_router
from .knowledge import router as knowledge_router
from .settings import router as settings_router
from .users import router as users_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(campaigns_router)
router.include_router(users_router)
router.include_router(knowledge_router)
