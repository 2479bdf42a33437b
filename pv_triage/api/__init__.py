"""API routes for PV Triage."""

from fastapi import APIRouter

from .audit import router as audit_router
from .studies import router as studies_router
from .users import router as users_router

# Main API router
api_router = APIRouter()

# Workflow: allocation, decisions, queue classification
api_router.include_router(studies_router)
api_router.include_router(audit_router)
api_router.include_router(users_router)

__all__ = ["api_router"]
