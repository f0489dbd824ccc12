"""
API routes for Capsule server.
"""

from fastapi import APIRouter

from capsule.api import chat, health, sandboxes

# Create main API router
api_router = APIRouter(prefix="/api")

# Include all route modules
api_router.include_router(health.router, tags=["health"])
api_router.include_router(sandboxes.router)
api_router.include_router(chat.router)
