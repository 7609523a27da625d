import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import Response

from dunning.core.config import settings
from dunning.core.database import init_db
from dunning.core.exceptions import DunningError
from dunning.routers import audit_logs, dunning, dunning_campaigns, failed_payments

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "Dunning Campaigns", "description": "Configure payment recovery campaigns."},
    {
        "name": "Failed Payments",
        "description": "Inspect, retry, bulk-retry and abandon failed payments.",
    },
    {"name": "Dunning", "description": "Run campaign scans and query recovery analytics."},
    {"name": "Audit Logs", "description": "Query the audit trail for recovery actions."},
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # No migrations: tables are created from the models on startup
    init_db()
    yield


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.version,
    description=(
        "Payment recovery API. Configure dunning campaigns, track failed payments, "
        "retry them on a schedule or on demand, and report on recovery."
    ),
    openapi_tags=OPENAPI_TAGS,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Total-Count"],
)


@app.middleware("http")
async def options_handler(request: Request, call_next):  # type: ignore[no-untyped-def]
    if request.method == "OPTIONS":
        origin = request.headers.get("origin", "*")
        return Response(
            status_code=200,
            headers={
                "Access-Control-Allow-Origin": origin,
                "Access-Control-Allow-Methods": "*",
                "Access-Control-Allow-Headers": "*",
                "Access-Control-Allow-Credentials": "true",
                "Access-Control-Max-Age": "86400",
            },
        )
    return await call_next(request)


@app.exception_handler(DunningError)
async def dunning_error_handler(request: Request, exc: DunningError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "code": "validation_error",
            "message": "Request validation failed",
            "errors": errors,
        },
    )


app.include_router(
    dunning_campaigns.router,
    prefix="/v1/dunning/campaigns",
    tags=["Dunning Campaigns"],
)
app.include_router(
    failed_payments.router,
    prefix="/v1/dunning/failed-payments",
    tags=["Failed Payments"],
)
app.include_router(dunning.router, prefix="/v1/dunning", tags=["Dunning"])
app.include_router(
    audit_logs.router,
    prefix="/v1/audit_logs",
    tags=["Audit Logs"],
)


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "app": settings.APP_NAME,
        "version": settings.version,
        "domain": settings.APP_DOMAIN,
        "status": "running",
    }
