"""
Subscription cancellation backend
Balanced A/B downsell assignment, resumable cancellation drafts and
guarded subscription status changes.
"""

import logging
import traceback

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from backend.utils.errors import CancellationError
from backend.utils.responses import cancellation_error_handler, error_response
from config.settings import settings, IS_PRODUCTION
from database import init_db
from routers.cancellation_router import cancellation_router
from routers.subscription_router import subscription_router

# ============================================================================
# LOGGING
# ============================================================================

LOGS_DIR = settings.log_path
LOGS_DIR.mkdir(parents=True, exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOGS_DIR / "app.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP SETUP
# ============================================================================

app = FastAPI(title="Subscription Cancellation Flow")


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception: {e}\n{traceback.format_exc()}")
            return JSONResponse(
                status_code=500,
                content={"ok": False, "data": {}, "error": "internal_error", "message": "Internal Server Error"}
            )


async def request_validation_handler(request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in err.get("loc", ())[1:]) for err in exc.errors()]
    return error_response(
        "validation_failed",
        status=422,
        message="Request body or parameters are invalid",
        data={"fields": fields},
    )


app.add_exception_handler(CancellationError, cancellation_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_middleware(UncaughtExceptionMiddleware)

# CORS MUST be near the bottom
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# STARTUP
# ============================================================================

@app.on_event("startup")
async def check_config_on_startup():
    """Warn about configuration that changes auth behaviour (non-fatal)."""
    if not settings.jwt_secret_key:
        logger.warning("Startup check: JWT_SECRET_KEY is not set; authenticated requests will be rejected")
    if settings.allow_anonymous_demo:
        logger.warning("Startup check: anonymous demo mode is ON; ownership checks are skipped for anonymous callers")
    logger.info(f"Startup check: production={IS_PRODUCTION}, autosave debounce={settings.autosave_debounce_ms}ms")


@app.on_event("startup")
async def initialize_database():
    """Create all tables."""
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


@app.get("/ping")
async def ping():
    return "pong"


# ============================================================================
# INCLUDE ROUTERS
# ============================================================================
app.include_router(cancellation_router)
app.include_router(subscription_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
