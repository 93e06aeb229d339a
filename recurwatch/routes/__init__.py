from fastapi import APIRouter
from recurwatch.routes import subscriptions

api_router = APIRouter()

api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
