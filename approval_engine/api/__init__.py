"""
Approval Engine API Application Factory
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from .templates import router as templates_router
from .instances import router as instances_router
from .delegations import router as delegations_router
from .inbox import router as inbox_router
from .approvers import router as approvers_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Approval Engine API",
        description="Multi-tier approval workflows with cascading rejections and delegation",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(templates_router, prefix="/templates", tags=["Templates"])
    app.include_router(instances_router, prefix="/instances", tags=["Instances"])
    app.include_router(delegations_router, prefix="/delegations", tags=["Delegations"])
    app.include_router(inbox_router, prefix="/inbox", tags=["Inbox"])
    app.include_router(approvers_router, prefix="/approvers", tags=["Approvers"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "approval_engine_api",
            "version": "1.0.0"
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Approval Engine API",
            "version": "1.0.0",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "templates": "/templates",
                "instances": "/instances",
                "delegations": "/delegations",
                "inbox": "/inbox",
                "approvers": "/approvers",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8095, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "approval_engine.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
