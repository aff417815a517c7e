"""
CocoaTrack Parcel Import — Point d'entrée FastAPI
"""
import logging
import time
import traceback
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from cocoatrack.api.v1 import imports
from cocoatrack.config import settings
from cocoatrack.core.database import Base, engine
from cocoatrack.core.errors import ErrorCode, ParcelleError, internal_error
from cocoatrack.core.logging import configure_logging, log_event
from cocoatrack.models import import_file, parcelle, planteur  # noqa: F401  (tables)

logger = logging.getLogger("cocoatrack.api")

HTTP_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.SHAPEFILE_MISSING_REQUIRED: 400,
    ErrorCode.INVALID_GEOMETRY: 400,
    ErrorCode.UNSUPPORTED_GEOMETRY_TYPE: 400,
    ErrorCode.LIKELY_PROJECTED_COORDINATES: 400,
    ErrorCode.MISSING_PRJ_ASSUMED_WGS84: 400,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.DUPLICATE_GEOMETRY: 409,
    ErrorCode.DUPLICATE_FILE: 409,
    ErrorCode.IMPORT_ALREADY_APPLIED: 409,
    ErrorCode.LIMIT_EXCEEDED: 413,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INTERNAL_ERROR: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Shutdown
    await engine.dispose()


# ── Logs & Sentry ─────────────────────────────────────────────────────────────
configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=0.1,
    )


# ── App ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="""
## CocoaTrack — Import de parcelles

Import des parcelles cacaoyères des coopératives depuis des fichiers SIG.

### Workflow
1. **Upload** : Shapefile (.zip), KML, KMZ ou GeoJSON, 50 Mo max
2. **Parse** : validation WGS84, réparation des géométries, détection des doublons
3. **Prévisualisation** des planteurs créés automatiquement (optionnel)
4. **Application** : `assign`, `orphan` ou `auto_create`
    """,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

# ── Middlewares ───────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1024)


@app.middleware("http")
async def add_timing_header(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{time.perf_counter() - start:.3f}s"
    return response


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# ── Routes ────────────────────────────────────────────────────────────────────

PREFIX = "/api/v1"

app.include_router(imports.router, prefix=PREFIX)


@app.get("/api/health", tags=["Health"])
async def health_check():
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
    }


# ── Gestionnaires d'erreurs ───────────────────────────────────────────────────

def error_response(exc: ParcelleError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if exc.error_code == ErrorCode.UNAUTHORIZED else None
    return JSONResponse(
        status_code=HTTP_STATUS_BY_CODE.get(exc.error_code, 500),
        content=exc.to_dict(),
        headers=headers,
    )


@app.exception_handler(ParcelleError)
async def parcelle_error_handler(request: Request, exc: ParcelleError):
    return error_response(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    message = first.get("msg", "Requête invalide")
    return JSONResponse(
        status_code=400,
        content={
            "error_code": ErrorCode.VALIDATION_ERROR.value,
            "message": message,
            "details": {"field": field or None, "message": message},
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    log_event(
        logger, f"Erreur non gérée : {exc}", level=logging.ERROR,
        event="unhandled_exception", error_code=ErrorCode.INTERNAL_ERROR.value,
    )
    logger.exception("Trace de l'erreur non gérée")
    wrapped = internal_error(str(exc))
    content = wrapped.to_dict()
    if settings.DEBUG:
        content["details"] = {"reason": str(exc), "traceback": traceback.format_exc()}
    return JSONResponse(status_code=500, content=content)
