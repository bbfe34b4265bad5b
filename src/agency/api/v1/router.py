"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.agency.api.v1 import billing, health, opportunities

router = APIRouter()

router.include_router(health.router)
router.include_router(opportunities.router, prefix="/api/v1")
router.include_router(billing.router, prefix="/api/v1")
