import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import models  # noqa: F401  (registers tables on Base)
from .config import ALLOWED_ORIGINS, CHANGE_NOTIFIER_BACKEND
from .database import Base, engine
from .domain.events.notifier import get_change_notifier
from .domain.events.router import router as events_router
from .domain.leave.router import router as leave_router
from .domain.scheduling.locks import get_slot_locks
from .domain.scheduling.router import router as schedule_router
from .errors import InvariantViolation, PlannerError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Another worker may have created them first
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")
            raise

    notifier = get_change_notifier()
    try:
        notifier.start()
    except Exception as e:
        logger.error(f"❌ Change notifier ({CHANGE_NOTIFIER_BACKEND}) failed to start: {e}")
        raise

    yield

    logger.info("Application shutting down...")
    notifier.stop()


app = FastAPI(title="Design Planner API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(PlannerError)
async def planner_error_handler(request: Request, exc: PlannerError):
    """Render engine errors as {"detail", "error", ...} with the error's status"""
    if isinstance(exc, InvariantViolation):
        logger.critical(f"🚨 Invariant violation on {request.method} {request.url.path}: {exc.message}")
    elif exc.status_code >= 500:
        logger.error(f"❌ {exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(schedule_router)
app.include_router(leave_router)
app.include_router(events_router)


@app.get("/health")
def health_check():
    notifier = get_change_notifier()
    return {
        "status": "healthy",
        "notifier": CHANGE_NOTIFIER_BACKEND,
        "subscribers": notifier.subscriber_count(),
        "heldSlotLocks": get_slot_locks().active_keys(),
    }
