from fastapi import APIRouter

from groupbuy.routers.cron import cron_router
from groupbuy.routers.shared import shared_router

main_router = APIRouter()

# Include domain-based routers
main_router.include_router(cron_router, prefix="/cron", tags=["Cron"])
main_router.include_router(shared_router, tags=["Shared Services"])
