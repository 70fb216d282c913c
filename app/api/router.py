from fastapi import APIRouter, Depends

from app.api import deps
from app.api.v1 import simulations

api_router = APIRouter()

_http_deps = [Depends(deps.rate_limit)]

api_router.include_router(
    simulations.router,
    prefix="/simulations",
    tags=["Simulations"],
    dependencies=_http_deps + [Depends(deps.require_admin)],
)
