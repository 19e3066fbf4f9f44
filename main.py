"""Main FastAPI application"""
import logging
import logging.config
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo.errors import PyMongoError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

import config
from routes import limiter, router as api_router
from services.expense_store import ExpenseStore
from services.expense_view_model import ExpenseViewModel
from services.monthly_aggregator import MonthlyAggregator
from services.session import SessionProvider

# --- Unified Logging Configuration with Rich ---
LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            # RichHandler renders its own timestamp and level
            "format": "%(name)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "default": {
            "class": "rich.logging.RichHandler",
            "formatter": "default",
            "level": "DEBUG",
            "rich_tracebacks": True,
            "show_time": True,
            "show_path": False,
            "log_time_format": "%Y-%m-%d %H:%M:%S",
            "markup": True
        },
    },
    "loggers": {
        "uvicorn": {
             "handlers": ["default"],
             "level": "INFO",
             "propagate": False,
        },
        "uvicorn.error": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        },
        "uvicorn.access": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        },
        "": { # Root logger for our application
            "handlers": ["default"],
            "level": config.LOG_LEVEL,
            "propagate": False,
        },
    },
}

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.config.dictConfig(LOGGING_CONFIG)


async def _wire(app: FastAPI, collection: AsyncIOMotorCollection) -> None:
    """Builds the session, store, aggregator and view model around `collection`."""
    session = SessionProvider()
    store = ExpenseStore(collection, session, verify_ownership=config.VERIFY_OWNERSHIP)
    aggregator = MonthlyAggregator(store, tz=config.get_timezone())
    view_model = ExpenseViewModel(session, store, aggregator)
    await view_model.start()
    app.state.session = session
    app.state.store = store
    app.state.aggregator = aggregator
    app.state.view_model = view_model
    logger.info(f"Configuration: VERIFY_OWNERSHIP = {config.VERIFY_OWNERSHIP}, timezone = {aggregator.tz}")


def create_app(collection: Optional[AsyncIOMotorCollection] = None) -> FastAPI:
    """Creates the API. Pass `collection` to skip connecting to MongoDB."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = None
        if collection is not None:
            await _wire(app, collection)
        else:
            # Startup: Connect to MongoDB
            logger.info(f"Connecting to MongoDB at {config.MONGODB_URI}...")
            try:
                client = AsyncIOMotorClient(config.MONGODB_URI)
                await client.admin.command('ping')
                logger.info("MongoDB ping successful.")
                expenses_collection = client[config.DB_NAME].get_collection(config.EXPENSES_COLLECTION)
                await _wire(app, expenses_collection)
                logger.info(f"Successfully connected to MongoDB database: {config.DB_NAME}")
            except PyMongoError as e:
                logger.error(f"Failed to connect to MongoDB: {e}")
                app.state.view_model = None

        yield # Application runs here

        # Shutdown: stop following the session and close MongoDB connection
        view_model = getattr(app.state, "view_model", None)
        if view_model is not None:
            await view_model.stop()
        if client is not None:
            logger.info("Closing MongoDB connection...")
            client.close()
            logger.info("MongoDB connection closed.")

    app = FastAPI(
        title="Expense Control API",
        description="Per-user expense tracking with live synchronisation and monthly totals.",
        version="0.1.0",
        lifespan=lifespan
    )

    # --- Rate Limiter State and Handler ---
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"], # Adjust in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api", tags=["api"])
    return app


configure_logging()
app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
