"""V1 API router -- aggregates all v1 endpoint routers under /api/v1."""

from __future__ import annotations

from fastapi import APIRouter

from src.outreach.api.v1 import admin, meetings, public, slots

router = APIRouter(prefix="/api/v1")

router.include_router(slots.router)
router.include_router(public.router)
router.include_router(admin.router)
router.include_router(meetings.router)
