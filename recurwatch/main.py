from fastapi import FastAPI
import logging
import os

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from recurwatch.database import engine, Base
from recurwatch.routes import api_router

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "y", "on")


# Guarded dev helper; production schemas are managed by migrations
if _env_bool("AUTO_CREATE_TABLES", default=False):
    logger.warning("AUTO_CREATE_TABLES is enabled; creating tables via SQLAlchemy metadata.")
    Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Recurwatch API",
    description="Recurring subscription detection over bank transactions",
    version="0.1.0",
    docs_url="/docs" if _env_bool("API_DOCS_ENABLED", default=False) else None,
    redoc_url="/redoc" if _env_bool("API_DOCS_ENABLED", default=False) else None,
    openapi_url="/openapi.json" if _env_bool("API_DOCS_ENABLED", default=False) else None,
)

app.include_router(api_router, prefix="/api")


@app.get("/health")
def health():
    return {"status": "healthy"}
