# API routes package
# One router per area; server.py mounts `router` under the /api prefix.

from fastapi import APIRouter

from . import admin_config, admin_roles, admin_users, analytics, insights, kpi, monday, pipelines

router = APIRouter()

router.include_router(admin_config.router)
router.include_router(admin_users.router)
router.include_router(admin_roles.router)
router.include_router(pipelines.router)
router.include_router(kpi.router)
router.include_router(analytics.router)
router.include_router(insights.router)
router.include_router(monday.router)
