import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .context import AppContext, build_context
from .errors import TodoLedgerError
from .logging_config import setup_logging
from .routers import sync as sync_router
from .routers import todos as todos_router
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "health", "description": "Service health and status endpoints."},
    {
        "name": "todos",
        "description": "Todo CRUD with filtering, pagination, soft delete and ledger verification.",
    },
    {"name": "sync", "description": "Ledger sync retry sweeper."},
]


# PUBLIC_INTERFACE
def create_app(settings: Optional[Settings] = None, context: Optional[AppContext] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: configuration; read from the environment when omitted
        context: prebuilt components (tests inject stores and ledgers this way)
    """
    settings = settings or (context.settings if context else get_settings())
    setup_logging(settings.log_level)
    ctx = context or build_context(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx.start()
        try:
            yield
        finally:
            ctx.close()

    app = FastAPI(
        title="Todo Ledger Backend",
        description="Todo API whose content hashes are mirrored to an Ethereum TodoRegistry contract.",
        version="0.2.0",
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )
    app.state.context = ctx

    # Configure CORS based on settings (.env -> CORS_ALLOW_ORIGINS), with '*' fallback
    allow_all = (settings.cors_allow_origins == ["*"]) or (len(settings.cors_allow_origins) == 0)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Global exception handlers for consistent JSON errors
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """
        Return a consistent JSON structure for request validation errors.

        Response format:
            {
                "error": "ValidationError",
                "detail": [... pydantic/fastapi error details ...],
                "message": "Request validation failed"
            }
        """
        return JSONResponse(
            status_code=422,
            content={
                "error": "ValidationError",
                "message": "Request validation failed",
                "detail": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(TodoLedgerError)
    async def todo_ledger_exception_handler(request: Request, exc: TodoLedgerError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "message": exc.message, "detail": jsonable_encoder(exc.detail)},
        )

    # PUBLIC_INTERFACE
    @app.get("/", summary="Health Check", tags=["health"])
    def health_check():
        """
        Health check endpoint.

        Returns:
            A JSON object indicating service health and the configured backends.
        """
        return {
            "message": "Healthy",
            "backend": settings.persistence_backend,
            "ledger": settings.ledger_backend,
            "signer": ctx.ledger.signer_address,
        }

    # Include routers
    app.include_router(todos_router.router)
    app.include_router(sync_router.router)
    return app


app = create_app()
