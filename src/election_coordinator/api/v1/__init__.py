"""
API v1 router aggregating all endpoints.
"""

from fastapi import APIRouter

from election_coordinator.api.v1.elections import router as elections_router
from election_coordinator.api.v1.transactions import router as transactions_router

router = APIRouter()

router.include_router(elections_router, prefix="/elections", tags=["Elections"])
router.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
