import logging
import sys
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bullion.config import settings
from bullion.routers import cart, kyc, orders, payments
from bullion.services.errors import CheckoutError
from bullion.utils.logger import logger

# Global logging configuration
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True,
)

app = FastAPI(title="Summit Bullion API", version="1.0.0")

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logging.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logging.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logging.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse(
            {"success": False, "error": "Internal server error", "rid": rid},
            status_code=500,
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    rid = getattr(request.state, "rid", None)
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path} rid={rid}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path} rid={rid}: {exc.message}")
    return JSONResponse({"success": False, "error": exc.message}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        {"success": False, "error": f"{location}: {message}" if location else message},
        status_code=400,
    )


app.include_router(cart.router)
app.include_router(payments.router)
app.include_router(orders.router)
app.include_router(kyc.router)


@app.on_event("startup")
async def startup_event():
    logger.info("Summit Bullion API starting up...")

    if settings.DATABASE_URL.startswith("sqlite"):
        # Local development: no migrations, create the schema directly.
        from bullion.database import Base, engine
        import bullion.db_models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Using SQLite database; tables ensured")
    else:
        logger.info("Using PostgreSQL database; schema is managed by Alembic")

    if not settings.platform_gold_configured:
        logger.warning("PLATFORM_GOLD_EMAIL / PLATFORM_GOLD_PASSWORD not set; checkout will fail")
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("STRIPE_WEBHOOK_SECRET not set; all webhooks will be rejected")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/")
async def root():
    return {
        "message": "Summit Bullion API",
        "version": "1.0.0",
        "docs": "/docs",
    }
