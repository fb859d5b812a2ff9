# Load environment variables FIRST, before any other imports
from dotenv import load_dotenv

load_dotenv()

import logging

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse

from core.config import settings
from core.database import check_db_health, engine, get_session_factory
from core.exceptions import ChatServiceError
from core.services.broadcaster import get_broadcaster
from routers import anonymous_chat, websocket_chat

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting application...")
    broadcaster = get_broadcaster()
    if not broadcaster.is_configured:
        logger.warning("Realtime delivery is disabled; events will be dropped")

    yield

    # Shutdown
    logger.info("Shutting down application...")
    await engine.dispose()


openapi_tags = [
    {
        "name": "anonymous-chat",
        "description": "Anonymous counseling sessions, assignment, and transcripts.",
    },
    {
        "name": "websocket",
        "description": "WebSocket connect, disconnect, and message endpoints (API Gateway integration).",
    },
    {
        "name": "health",
        "description": "Root and health check endpoints for verifying API availability.",
    },
]

app = FastAPI(
    title="Haven Counseling API",
    description=(
        "Anonymous counseling chat. Students open sessions without an account, "
        "counselors claim them, and both sides exchange messages in real time."
    ),
    version="1.0.0",
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_tags=openapi_tags,
    lifespan=lifespan,
)

# CORS Middleware
# Required because API Gateway HTTP_PROXY integration passes OPTIONS requests to backend.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-Anonymous-Id"],
)


def _error_body(message: str, error: str) -> dict:
    """Stable error shape; raw detail is only exposed outside production."""
    body = {"success": False, "message": message}
    if not settings.is_production:
        body["error"] = error
    return body


@app.exception_handler(ChatServiceError)
async def chat_service_error_handler(request: Request, exc: ChatServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc.__cause__)
    else:
        logger.warning("%s %s rejected (%d): %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.message, f"{type(exc).__name__}: {exc.__cause__ or exc.message}"),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning("%s %s invalid request: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(status_code=400, content=_error_body("Invalid request", str(exc.errors())))


def custom_openapi():
    """Override OpenAPI schema generation to inject BearerAuth security scheme."""
    if app.openapi_schema:
        return app.openapi_schema
    schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
        tags=app.openapi_tags,
    )
    schema["components"] = schema.get("components", {})
    schema["components"]["securitySchemes"] = {
        "BearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
        },
        "AnonymousId": {
            "type": "apiKey",
            "in": "header",
            "name": "x-anonymous-id",
        },
    }
    app.openapi_schema = schema
    return schema


app.openapi = custom_openapi

# Anonymous chat routes
app.include_router(
    anonymous_chat.router,
    prefix=f"{settings.API_V1_STR}/anonymous-chat",
    tags=["anonymous-chat"],
)

# WebSocket routes (API Gateway WebSocket -> HTTP POST)
app.include_router(websocket_chat.router, prefix=f"{settings.API_V1_STR}/ws")


@app.get(
    "/",
    summary="API root",
    description="Returns a welcome message. Useful for verifying the API is reachable.",
    operation_id="root",
    tags=["health"],
)
async def root():
    return {"message": "Welcome to Haven Counseling API"}


@app.get(
    "/health",
    summary="Health check",
    description=(
        "Validates database connectivity. Returns HTTP 200 when healthy, HTTP 503 when unhealthy. "
        "Used by ALB health checks to determine whether to route traffic to this instance."
    ),
    operation_id="health_check",
    tags=["health"],
    responses={
        503: {"description": "Database connection failed"},
    },
)
async def health_check(session_factory=Depends(get_session_factory)):
    if await check_db_health(session_factory):
        return {"status": "healthy", "database": "connected"}
    logger.error("Health check failed: database unreachable")
    return JSONResponse(status_code=503, content={"status": "unhealthy", "database": "disconnected"})
