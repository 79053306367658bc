from fastapi import APIRouter
from servicebay.api.v2 import (
    auth,
    shop,
    jobs,
    incentive_rules,
    users,
    analytics,
)

api_router = APIRouter()

# Include all v2 routers
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(shop.router, prefix="/shop", tags=["shop"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(incentive_rules.router, prefix="/incentive-rules", tags=["incentive-rules"])
api_router.include_router(users.router, prefix="/users", tags=["users"])
api_router.include_router(analytics.router, prefix="/analytics", tags=["analytics"])
