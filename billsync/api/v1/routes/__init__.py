from fastapi import APIRouter

from billsync.api.v1.routes import plans, subscription, webhooks

router = APIRouter()
router.include_router(subscription.router, prefix="/subscription")
router.include_router(plans.router, prefix="/plans")
router.include_router(webhooks.router, prefix="/webhooks")
