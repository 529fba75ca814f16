from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from app.core import config
from app.core.database.engine import AsyncSessionLocal, engine, get_db, init_db
from app.core.limiter import limiter
from app.features.users.routes import router as user_router
from app.features.organizations.routes import router as organization_router
from app.features.permissions.routes import router as permission_router
from app.features.permissions.defaults import seed_defaults
from app.utils import get_logger


log = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    await init_db()
    if config.SEED_DEFAULTS_ON_STARTUP:
        async with AsyncSessionLocal() as session:
            await seed_defaults(session)
        log.info("Default permissions, roles and implications seeded")
    yield
    await engine.dispose()


log.info("Initializing server")
app = FastAPI(
    lifespan=lifespan,
    title="Workforce Backend",
    description="Multi-tenant workforce management API with organization-scoped RBAC",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
app.state.limiter = limiter


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.app.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError) -> Response:
    log.warning("Integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    return JSONResponse({"detail": "Conflicts with existing data"}, status_code=409)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> Response:
    log.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Workforce Backend API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "protected_endpoints": ["/users/*", "/organizations/*", "/permissions/*"],
            "public_endpoints": ["/", "/health", "/permissions/super-admins"]
        },
        "features": {
            "permissions": "Organization-scoped RBAC with role inheritance, permission implications and direct grants",
            "organizations": "Multi-tenant care home and agency management",
            "users": "User management with Appwrite authentication"
        }
    }


@app.get("/health")
async def health(db: Annotated[AsyncSession, Depends(get_db)]):
    """Liveness plus a round trip to the database."""
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        log.exception("Health check could not reach the database")
        return JSONResponse({"status": "unhealthy", "database": "unreachable"}, status_code=503)
    return {"status": "healthy", "database": "ok"}


# Include routers
app.include_router(user_router, prefix="/users", tags=["users"])
# Alias for singular form (if frontend uses /user/me)
app.include_router(user_router, prefix="/user", tags=["users"], include_in_schema=False)

# Organization routes
app.include_router(organization_router, prefix="/organizations", tags=["organizations"])
# Alias for singular form
app.include_router(organization_router, prefix="/organization", tags=["organizations"], include_in_schema=False)

# Permission routes (RBAC)
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])
