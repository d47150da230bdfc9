"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import reconciliation, verification

api_router = APIRouter()

api_router.include_router(
    reconciliation.router,
    prefix="/reconciliation",
    tags=["reconciliation"]
)

api_router.include_router(
    verification.router,
    prefix="/verification",
    tags=["verification"]
)
