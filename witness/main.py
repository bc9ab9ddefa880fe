"""
Witness Ledger HTTP application.

Run locally with `python -m witness.main` or `uvicorn witness.main:app --reload`.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from witness.api.deps import DbSession
from witness.api.middleware.request_id import REQUEST_ID_HEADER, RequestIdMiddleware
from witness.api.v1 import router as api_v1_router
from witness.config import Settings, get_settings
from witness.database import close_db, init_db
from witness.errors import WitnessError
from witness.logging_config import configure_logging, get_logger
from witness.schemas.common import HealthResponse

settings = get_settings()
logger = get_logger(__name__)

DESCRIPTION = """
Collaborative documentation and fact-checking of incident records.

- **Schema registry**: per-project record types, typed fields, conditional visibility
- **Evidence**: quotes and sources linked to the fields they support
- **Workflow**: two-person review, item-level validation by two validators, publication
- **Third-party verification**: independent audits and verification levels
- **AI quota**: hourly, daily and monthly limits plus a project credit ledger
"""

DEV_ORIGINS = ["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:3000"]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging(log_level=settings.log_level, environment=settings.environment, debug=settings.debug)
    logger.info("Starting %s %s (%s)", settings.project_name, settings.version, settings.environment)
    await init_db()
    yield
    await close_db()
    logger.info("Shut down cleanly")


def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


async def witness_error_handler(request: Request, exc: WitnessError) -> JSONResponse:
    body = exc.to_dict()
    body["request_id"] = _request_id(request)
    return JSONResponse(status_code=exc.status_code, content=body)


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "request_id": _request_id(request)},
        headers=exc.headers,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies. Domain validation failures go through WitnessError as 400."""
    errors = [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"], "type": err["type"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": "Validation error", "errors": errors, "request_id": _request_id(request)},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled %s on %s %s", type(exc).__name__, request.method, request.url.path)
    detail = str(exc) if settings.debug else "Internal server error"
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": detail, "request_id": _request_id(request)},
    )


def create_app(config: Settings = settings) -> FastAPI:
    application = FastAPI(
        title=config.project_name,
        description=DESCRIPTION,
        version=config.version,
        lifespan=lifespan,
        docs_url="/docs" if config.debug else None,
        redoc_url="/redoc" if config.debug else None,
    )

    # Added last means outermost: CORS wraps the request id middleware.
    application.add_middleware(RequestIdMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=DEV_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )

    application.add_exception_handler(WitnessError, witness_error_handler)
    application.add_exception_handler(HTTPException, http_error_handler)
    application.add_exception_handler(RequestValidationError, request_validation_handler)
    application.add_exception_handler(Exception, unhandled_error_handler)

    application.include_router(api_v1_router, prefix=config.api_v1_prefix)
    return application


app = create_app()


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(db: DbSession):
    """Liveness plus a round trip to the database."""
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Health check could not reach the database", exc_info=True)
        return HealthResponse(status="degraded", version=settings.version, database="unavailable")
    return HealthResponse(version=settings.version, database="connected")


@app.get("/", tags=["Root"])
async def root():
    return {"name": settings.project_name, "version": settings.version, "api": {"v1": settings.api_v1_prefix}}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("witness.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
