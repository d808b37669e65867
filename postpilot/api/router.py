from fastapi import APIRouter

from postpilot.api.experiments import router as experiments_router
from postpilot.api.jobs import router as jobs_router

api_router = APIRouter()

# API routes at /api/*
api_router.include_router(jobs_router, prefix="/api", tags=["jobs"])
api_router.include_router(experiments_router, prefix="/api", tags=["experiments"])
