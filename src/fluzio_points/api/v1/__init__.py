from fastapi import APIRouter

from .endpoints import (
    accounts,
    commitments,
    health,
    missions,
    participations,
    settlement,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(accounts.router)
router.include_router(missions.router)
router.include_router(participations.router)
router.include_router(commitments.router)
router.include_router(settlement.router)
