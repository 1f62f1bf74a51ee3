from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from rbac_engine.bootstrap import build_engine
from rbac_engine.core import config
from rbac_engine.core.database.engine import init_db
from rbac_engine.core.exceptions import (
    CircularHierarchy,
    DuplicateEntity,
    GuardMismatch,
    HierarchyTooDeep,
    InvalidBulkOperation,
    NotFound,
)
from rbac_engine.features.audit.routes import router as audit_router
from rbac_engine.features.conflicts.routes import router as conflict_router
from rbac_engine.features.permissions.dependencies import get_authorization_header
from rbac_engine.features.permissions.routes import router as permission_router
from rbac_engine.features.transfer.routes import router as transfer_router
from rbac_engine.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="RBAC Engine",
    description="Roles, permissions and hierarchical access control",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
limiter = Limiter(key_func=get_authorization_header)
app.state.limiter = limiter


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.rbac_engine.features."), timing=timing, tags=tags))


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
        # ("body", "principal", "principal_id") -> "principal.principal_id"
        path = [str(part) for part in error["loc"] if part not in ("body", "query", "path")]
        errors[".".join(path) or "root"] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


# ============================================================================
# Engine errors
# ============================================================================

@app.exception_handler(NotFound)
async def not_found_handler(_request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(DuplicateEntity)
async def duplicate_handler(_request: Request, exc: DuplicateEntity):
    return JSONResponse(status_code=409, content={"detail": str(exc), "existing_id": exc.existing_id})


@app.exception_handler(CircularHierarchy)
async def circular_handler(_request: Request, exc: CircularHierarchy):
    return JSONResponse(status_code=409, content={"detail": str(exc), "path": jsonable_encoder(exc.path)})


@app.exception_handler(GuardMismatch)
async def guard_mismatch_handler(_request: Request, exc: GuardMismatch):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(HierarchyTooDeep)
async def too_deep_handler(_request: Request, exc: HierarchyTooDeep):
    return JSONResponse(status_code=422, content={"detail": str(exc), "max_depth": exc.max_depth})


@app.exception_handler(InvalidBulkOperation)
async def bulk_handler(_request: Request, exc: InvalidBulkOperation):
    log.info(f"Bulk operation rejected: {len(exc.failures)} failure(s)")
    return JSONResponse(status_code=422, content={"detail": str(exc), "failures": jsonable_encoder(exc.failures)})


@app.on_event("startup")
async def startup():
    """Initialize database and build the permission engine on application startup."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")
    if getattr(app.state, "engine", None) is None:
        app.state.engine = build_engine()


@app.on_event("shutdown")
async def shutdown():
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.close()


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "RBAC Engine API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "admin_permission": config.ADMIN_PERMISSION,
        },
        "features": {
            "permissions": "Permissions, roles and direct grants scoped by guard and team",
            "hierarchy": "Role inheritance with cycle and depth checks",
            "conflicts": "Conflict detection with auto-fix for orphaned roles and duplicates",
            "audit": "Audit trail of every mutation",
            "transfer": "JSON import and export of the catalog",
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
# Transfer routes share the /permissions prefix and must precede the /{permission_id} routes
app.include_router(transfer_router, prefix="/permissions", tags=["transfer"])
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])
app.include_router(conflict_router, prefix="/conflicts", tags=["conflicts"])
app.include_router(audit_router, prefix="/audit", tags=["audit"])
