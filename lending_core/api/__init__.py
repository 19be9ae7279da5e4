"""
FastAPI REST API

Loan requests and workflow actions, loans and schedules, payment orders,
the PhonePe callback, operational admin endpoints and the EMI calculator.
Runs on port 8090.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .. import __version__
from ..errors import LendingError
from ..system import LendingSystem
from . import admin, loan_requests, loans, payments, tools
from .dependencies import http_status_for


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """
    Build the API around a lending system.

    When no system is given one is built from configuration, and the
    overdue sweep scheduler and the notification worker run for the
    lifetime of the app.
    """
    owns_system = system is None
    system = system or LendingSystem()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_system:
            system.start_background_jobs()
        yield
        if owns_system:
            system.shutdown()

    app = FastAPI(
        title="Lending Core API",
        description="Loan request workflow, EMI schedules and payment reconciliation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        return JSONResponse(status_code=http_status_for(exc.kind), content={"detail": exc.to_dict()})

    app.include_router(loan_requests.router, prefix="/requests", tags=["Requests"])
    app.include_router(loans.router, prefix="/loans", tags=["Loans"])
    app.include_router(payments.router, prefix="/payments", tags=["Payments"])
    app.include_router(admin.router, prefix="/admin", tags=["Admin"])
    app.include_router(tools.router, prefix="/tools", tags=["Tools"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/")
    async def root():
        return {
            "system": "Lending Core",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "requests": "/requests",
                "loans": "/loans",
                "payments": "/payments",
                "admin": "/admin",
                "tools": "/tools",
            },
        }

    return app


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "lending_core.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
