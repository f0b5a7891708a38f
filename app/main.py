import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api import admin, coupons, payments, plans, users, webhooks
from app.core.config import settings

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Sintonia Billing API", version="1.0.0")

# Default localhost origins + ALLOWED_ORIGINS_EXTRA
_allowed_origins = settings.get_allowed_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Ensure CORS headers are included even on unhandled exceptions"""
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}")

    response = JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

    origin = request.headers.get("origin")
    if origin and origin in _allowed_origins:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
    return response


app.include_router(plans.router, prefix="/plans", tags=["plans"])
app.include_router(payments.router, prefix="/payment", tags=["payment"])
app.include_router(coupons.router, prefix="/coupons", tags=["coupons"])
app.include_router(users.router, prefix="/user", tags=["user"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])


@app.get("/")
async def root():
    return {"message": "Sintonia Billing API", "version": "1.0.0"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
