from fastapi import APIRouter

from escrowhouse.api.v1.admin import router as admin_router
from escrowhouse.api.v1.disputes import router as disputes_router
from escrowhouse.api.v1.holds import router as holds_router
from escrowhouse.api.v1.mediation import router as mediation_router
from escrowhouse.api.v1.milestones import router as milestones_router

v1_router = APIRouter()

v1_router.include_router(milestones_router)
v1_router.include_router(disputes_router)
v1_router.include_router(mediation_router)
v1_router.include_router(holds_router)
v1_router.include_router(admin_router)
