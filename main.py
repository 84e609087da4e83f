import logging
import os
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, get_settings
from database import SessionLocal, check_connection, engine
from gateways import build_gateways
from routers import payments_router
from services.errors import PaymentError
from services.payment_orchestrator import PaymentOrchestrator
from utils.logger import configure_logging

logger = logging.getLogger(__name__)


def build_orchestrator(settings: Settings) -> PaymentOrchestrator:
    """Orchestrator wired to the configured database and gateways."""
    return PaymentOrchestrator(
        SessionLocal,
        build_gateways(settings),
        default_success_url=settings.default_success_url,
        default_fail_url=settings.default_fail_url,
    )


def create_app(
    orchestrator: Optional[PaymentOrchestrator] = None,
    db_engine: Optional[Engine] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_dir, settings.log_level)

    # App instance
    app = FastAPI(title="Course Payments")
    app.state.orchestrator = orchestrator or build_orchestrator(settings)
    app.state.engine = db_engine or engine

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(payments_router)

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404 and exc.detail == "Not Found":
            return JSONResponse(status_code=404, content={"error": "Route not found", "code": "NOT_FOUND"})
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail), "code": f"HTTP_{exc.status_code}"},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"error": "Request is invalid", "code": "INVALID_REQUEST", "retryable": False, "details": details},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error", "code": "INTERNAL_ERROR"})

    @app.get("/health")
    def health(request: Request):
        db_ok = check_connection(request.app.state.engine)
        return JSONResponse(
            status_code=200 if db_ok else 503,
            content={
                "status": "ok" if db_ok else "degraded",
                "database": db_ok,
                "gateways": sorted(request.app.state.orchestrator.gateways),
            },
        )

    return app


app = create_app()

if __name__ == "__main__":
    port = int(os.getenv("PORT", 10000))
    uvicorn.run("main:app", host="0.0.0.0", port=port, reload=True)
