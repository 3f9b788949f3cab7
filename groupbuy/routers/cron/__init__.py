from fastapi import APIRouter

from .general_orders import general_orders_cron_router

cron_router = APIRouter()

# Include sub-routers
cron_router.include_router(
    general_orders_cron_router, prefix="/general-orders", tags=["Cron - General Orders"]
)
