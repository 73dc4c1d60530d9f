"""
Election Coordinator Application

HTTP surface the browser UI uses to start elections, vote and read tallies
on a blockchain-hosted election contract.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from election_coordinator.api.v1 import router as api_v1_router
from election_coordinator.core.config import settings
from election_coordinator.core.errors import CoordinatorError, InvalidRequestError
from election_coordinator.core.events import create_start_app_handler, create_stop_app_handler

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    await create_start_app_handler(app)()
    yield
    await create_stop_app_handler(app)()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title=settings.APP_NAME,
        description="Transaction lifecycle coordinator for an on-chain election contract",
        version="1.0.0",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        openapi_url="/openapi.json" if settings.DEBUG else None,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
    )

    application.include_router(api_v1_router, prefix="/api/v1")

    @application.exception_handler(CoordinatorError)
    async def coordinator_exception_handler(request: Request, exc: CoordinatorError) -> JSONResponse:
        """Render a typed coordinator failure as {error_kind, message}."""
        logger.info(
            "operation_failed",
            error_kind=exc.error_kind,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_payload())

    @application.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Malformed UI input gets the same structured shape as other failures."""
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        return JSONResponse(
            status_code=InvalidRequestError.http_status,
            content={"error_kind": InvalidRequestError.error_kind, "message": problems},
        )

    @application.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Never hand the UI an unstructured stack trace."""
        logger.exception(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            method=request.method,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error_kind": "InternalError",
                "message": "An internal error occurred. Please try again later.",
            },
        )

    return application


app = create_application()


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint for load balancers and monitoring."""
    return {"status": "healthy", "service": "election-coordinator"}


@app.get("/health/services", tags=["Health"])
async def service_status(request: Request) -> dict:
    """
    Configuration status of the contract binding and signer.

    Used by smoke tests to verify deployment completeness.
    """
    coordinator = getattr(request.app.state, "coordinator", None)
    services = {
        "contract": {
            "configured": coordinator is not None,
            "details": {
                "rpc_url": settings.RPC_URL,
                "contract_address": settings.CONTRACT_ADDRESS,
            },
        },
        "signer": {
            "configured": settings.PRIVATE_KEY is not None,
        },
    }
    all_configured = all(svc["configured"] for svc in services.values())

    return {
        "status": "healthy" if all_configured else "degraded",
        "all_services_configured": all_configured,
        "services": services,
    }


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": "1.0.0",
        "docs": "/docs" if settings.DEBUG else "Documentation disabled in production",
    }


def run() -> None:
    """Serve the application with uvicorn."""
    uvicorn.run(
        "election_coordinator.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )


if __name__ == "__main__":
    run()
