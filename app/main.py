import asyncio
import logging
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from app.config import settings
from app.core.dependencies import get_engine
from app.modules.auth import routes as auth_routes
from app.modules.deployments import routes as deployments_routes
from app.modules.workspaces import routes as workspaces_routes
from app.modules.tenants import routes as tenants_routes

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    redirect_slashes=False,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    if settings.is_production:
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
    return JSONResponse(status_code=500, content={"detail": str(exc)})


class SecurityHeadersMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message):
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                message["headers"].extend([
                    (b"X-Content-Type-Options", b"nosniff"),
                    (b"X-Frame-Options", b"DENY"),
                ])
            await send(message)

        await self.app(scope, receive, send_with_headers)


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include module routes
app.include_router(auth_routes.router, prefix="/api/v1")
app.include_router(tenants_routes.router, prefix="/api/v1")
app.include_router(workspaces_routes.router, prefix="/api/v1")
app.include_router(deployments_routes.router, prefix="/api/v1")

_background_tasks = []


@app.on_event("startup")
async def startup_event():
    logger.info("Application startup")
    from app.modules.deployments.reconciler import recover_interrupted, reconcile_loop, port_forward_loop

    engine = get_engine()
    # Nothing is in flight yet, so every PENDING/DEPLOYING/DELETING record is orphaned
    try:
        await asyncio.to_thread(recover_interrupted, engine, 0)
    except Exception as e:
        logger.error(f"Startup recovery failed: {str(e)}")

    _background_tasks.append(asyncio.create_task(reconcile_loop(engine)))
    if settings.local_access_enabled:
        _background_tasks.append(asyncio.create_task(port_forward_loop(engine)))
    logger.info(
        f"Reconciler started (every {settings.reconcile_interval_seconds}s); "
        f"local access {'enabled' if settings.local_access_enabled else 'disabled'}"
    )


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Application shutdown")
    for task in _background_tasks:
        task.cancel()
    _background_tasks.clear()
    get_engine().shutdown()


@app.get("/")
async def root():
    return {"message": "Welcome to appyard-backend", "status": "healthy"}


@app.get("/health")
@limiter.exempt
async def health():
    return {"status": "healthy"}


@app.get("/ready")
@limiter.exempt
async def ready(engine=Depends(get_engine)):
    """Readiness check: the database and the cluster API must both answer."""
    checks = {}
    try:
        await asyncio.to_thread(
            lambda: engine.supabase.table("recipes").select("slug").limit(1).execute()
        )
        checks["database"] = "ok"
    except Exception as e:
        logger.warning(f"Readiness: database unavailable: {e}")
        checks["database"] = "unavailable"
    try:
        await asyncio.to_thread(engine.cluster.ping)
        checks["cluster"] = "ok"
    except Exception as e:
        logger.warning(f"Readiness: cluster unavailable: {e}")
        checks["cluster"] = "unavailable"

    if all(v == "ok" for v in checks.values()):
        return {"status": "ready", "checks": checks}
    return JSONResponse(status_code=503, content={"status": "not ready", "checks": checks})
