# tracklock/api/v1/api.py
from fastapi import APIRouter
from tracklock.api.v1.endpoints import stream, hls, visualize

API_V1_PREFIX = "/api/v1"

api_router = APIRouter()
api_router.include_router(stream.router, prefix="/stream", tags=["stream"])
api_router.include_router(hls.router, prefix="/proxy", tags=["hls"])
api_router.include_router(visualize.router, prefix="/visualize", tags=["visualize"])
