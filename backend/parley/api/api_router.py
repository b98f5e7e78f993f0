from fastapi import APIRouter
from parley.api.routes.drafts import drafts_router
from parley.api.routes.jobs import health_router, jobs_router
from parley.api.routes.scheduling import scheduling_router
from parley.api.routes.work_items import work_items_router

api_router = APIRouter()

api_router.include_router(scheduling_router)
api_router.include_router(drafts_router)
api_router.include_router(work_items_router)
api_router.include_router(jobs_router)
api_router.include_router(health_router)
