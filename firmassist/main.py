import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
import alembic.config
import alembic.command
from firmassist.core.config import settings
from firmassist.core.database import engine
from firmassist.api.router import api_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def run_migrations():
    """Sync function to run migrations"""
    alembic_cfg = alembic.config.Config("alembic.ini")
    alembic.command.upgrade(alembic_cfg, "head")


# Close the engine once everything is done and close all the sessions
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Apply any pending migrations automatically when the app starts
    try:
        await asyncio.to_thread(run_migrations)
        logger.info("Migrations applied successfully (or already up-to-date)")
    except Exception:
        logger.exception("Migration error during startup")

    if not settings.ai_configured:
        logger.warning("GEMINI_API_KEY is not set, /ai runs will answer 503")

    yield
    await engine.dispose()


app = FastAPI(title="FirmAssist AI API", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Welcome to the FirmAssist AI API"}
