from fastapi import APIRouter
from schoolsync.api.v1.endpoints import summaries, sync

api_router = APIRouter(prefix="/api/v1")

# Include all endpoint routers
api_router.include_router(sync.router)
api_router.include_router(summaries.router)
