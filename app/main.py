from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.database import connect_db, disconnect_db
from app.logging_config import configure_logging
from app.negotiations.errors import (
    AdvisorUnavailable,
    BookingFailed,
    ConcurrencyConflict,
    DeliveryFailed,
    InvalidTransition,
    NegotiationError,
    NotFound,
    ValidationError,
)
from app.negotiations.models import ErrorResponse
from app.negotiations.router import router as negotiations_router
from app.negotiations.store import ensure_indexes

# HTTP status for each engine error kind. External dependency failures are
# 503 so orchestrators know to back off and retry.
ERROR_STATUS = {
    NotFound: 404,
    InvalidTransition: 409,
    ConcurrencyConflict: 409,
    ValidationError: 422,
    AdvisorUnavailable: 503,
    DeliveryFailed: 503,
    BookingFailed: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await connect_db()
    await ensure_indexes()
    yield
    await disconnect_db()


app = FastAPI(
    title="Carrier Negotiation Engine",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.DOCS_ENABLED else None,
    redoc_url="/redoc" if settings.DOCS_ENABLED else None,
    openapi_url="/openapi.json" if settings.DOCS_ENABLED else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",")],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(negotiations_router)


@app.exception_handler(NegotiationError)
async def negotiation_error_handler(request: Request, exc: NegotiationError):
    status_code = ERROR_STATUS.get(type(exc), 500)
    body = ErrorResponse(detail=exc.message, error=exc.code, negotiation=exc.negotiation)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.get("/health")
async def health_check():
    return {"status": "ok"}
