from fastapi import APIRouter

from shipment_service.api.routes import shipping, webhooks

api_router = APIRouter()
api_router.include_router(shipping.router)
api_router.include_router(webhooks.router)
