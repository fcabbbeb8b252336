'''
FastAPI application of the billing backend: routers, the database lifespan
and the translation of billing errors into HTTP responses.
'''
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .database.engine import init_db, close_db
from .common.logger import log
from .common.config import settings
from .common.exceptions import (
    BillingError,
    NotFoundError,
    InvalidPeriodError,
    InvalidAmountError,
    PolicyMisconfiguredError,
    NotMostRecentError,
    OnlyPendingDeletableError,
    NoQualifiedLessonsError,
    InvalidStatusTransitionError,
    ConcurrencyConflictError
)
from .api import balances, lessons, payments, payouts, policies, settlements

@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info(f"{settings.APP_NAME} v{settings.APP_VERSION} starting (test mode: {settings.TEST_MODE}).")
    init_db()
    yield
    await close_db()
    log.info(f"{settings.APP_NAME} stopped.")


app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    lifespan=lifespan
)

# Local admin frontends plus whatever the deployment configures
LOCAL_ORIGINS = ["http://localhost", "http://localhost:3000", "http://localhost:5173"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=LOCAL_ORIGINS + list(settings.BACKEND_CORS_ORIGINS),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Domain errors -> HTTP ---
# Checked in order; the first matching class wins
ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (InvalidPeriodError, 422),
    (InvalidAmountError, 422),
    (PolicyMisconfiguredError, 422),
    (NotMostRecentError, 409),
    (OnlyPendingDeletableError, 409),
    (NoQualifiedLessonsError, 409),
    (InvalidStatusTransitionError, 409),
    (ConcurrencyConflictError, 409),
)


def status_code_for(error: BillingError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 400


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    body = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, ConcurrencyConflictError):
        body["retryable"] = True
    return JSONResponse(status_code=status_code_for(exc), content=body)


@app.get("/")
async def health_check():
    return {"status": "ok", "service": settings.APP_NAME, "version": settings.APP_VERSION}

app.include_router(balances.router)
app.include_router(lessons.router)
app.include_router(payments.router)
app.include_router(payouts.router)
app.include_router(policies.router)
app.include_router(settlements.router)
