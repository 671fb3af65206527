from fastapi import APIRouter

from src.api.routes import bookings, compliance, listings, operations, payments, requests


router = APIRouter()

router.include_router(operations.router)
router.include_router(requests.router)
router.include_router(listings.router)
router.include_router(bookings.router)
router.include_router(compliance.router)
router.include_router(payments.router)
