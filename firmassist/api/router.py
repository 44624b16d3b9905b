from fastapi import APIRouter
from firmassist.api.endpoints import ai, auth, users

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(auth.router)
api_router.include_router(users.router)
api_router.include_router(ai.router)
