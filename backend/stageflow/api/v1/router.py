# stageflow/api/v1/router.py

from fastapi import APIRouter

from stageflow.api.v1.endpoints import workflows, executions, snapshots, audit

# Create main API router
api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(workflows.router, prefix="/workflows", tags=["Workflows"])
api_router.include_router(executions.router, prefix="/executions", tags=["Executions"])
api_router.include_router(snapshots.router, prefix="/snapshots", tags=["Snapshots"])
api_router.include_router(audit.router, prefix="/admin/audit", tags=["Admin"])
