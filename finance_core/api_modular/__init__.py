"""
Finance Core API Application Factory
"""

import uuid
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import get_finance_system
from .journals import router as journals_router
from .periods import router as periods_router
from .accounts import router as accounts_router
from .org import router as org_router
from .cash import router as cash_router
from .cari import router as cari_router
from .approvals import router as approvals_router
from ..config import get_config
from ..errors import FinanceError, default_error_code
from ..logging_config import get_logger, reset_request_id, set_request_id, setup_logging
from ..tenancy import tenant_context


logger = get_logger("finance_core.api")


def error_response(request: Request, status_code: int, message: str,
                   code: Optional[str] = None, details: Any = None) -> JSONResponse:
    """The one error envelope every failure is rendered in"""
    return JSONResponse(status_code=status_code, content={
        "message": message,
        "code": code or default_error_code(status_code),
        "details": details,
        "requestId": getattr(request.state, "request_id", None),
    })


def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(FinanceError)
    async def handle_finance_error(request: Request, exc: FinanceError):
        return error_response(request, exc.status_code, exc.message, exc.code, exc.details)

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        return error_response(request, 400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return error_response(request, 400, "Request validation failed", details=errors)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(request, 404, "Route not found", "ROUTE_NOT_FOUND",
                                  {"path": request.url.path})
        return error_response(request, exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        logger.error("Unhandled error on %s %s", request.method, request.url.path,
                     exc_info=exc, extra={"request_id": request_id})
        return error_response(request, 500, "Internal server error")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    app = FastAPI(
        title="Finance Core API",
        description="Multi-tenant general ledger, period close, cash and Cari subledger",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        """Request id and tenant for everything downstream, including log lines"""
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = set_request_id(request_id)
        try:
            try:
                tenant_id = get_finance_system().tenant_middleware.extract_tenant(request)
            except FinanceError as exc:
                response = error_response(request, exc.status_code, exc.message,
                                          exc.code, exc.details)
            else:
                with tenant_context(tenant_id):
                    response = await call_next(request)
        finally:
            reset_request_id(token)
        response.headers["X-Request-Id"] = request_id
        return response

    # Add CORS middleware
    origins = [o.strip() for o in config.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    # Include routers
    prefix = config.api_prefix
    app.include_router(journals_router, prefix=f"{prefix}/gl", tags=["General Ledger"])
    app.include_router(periods_router, prefix=f"{prefix}/gl", tags=["Periods"])
    app.include_router(accounts_router, prefix=f"{prefix}/gl", tags=["Chart of Accounts"])
    app.include_router(org_router, prefix=f"{prefix}/org", tags=["Organisation"])
    app.include_router(cash_router, prefix=f"{prefix}/cash", tags=["Cash"])
    app.include_router(cari_router, prefix=f"{prefix}/cari", tags=["Cari"])
    app.include_router(approvals_router, prefix=f"{prefix}/approvals", tags=["Approvals"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint, aggregates a storage ping"""
        storage_ok = get_finance_system().storage.ping()
        body = {
            "status": "healthy" if storage_ok else "degraded",
            "service": "finance_core_api",
            "version": "1.0.0",
            "checks": {"storage": "ok" if storage_ok else "unavailable"},
        }
        return JSONResponse(status_code=200 if storage_ok else 503, content=body)

    return app


app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "finance_core.api_modular:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
