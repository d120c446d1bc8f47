import logging
import sys

from contextlib import asynccontextmanager

from src.backend.common.config.app_config import config

# FastAPI imports
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Local imports
from src.backend.rebates.api.rebates_router import rebates_router


# Allow `uvicorn app:app` from src/backend as well as `src.backend.app:app`.
sys.modules.setdefault("app", sys.modules[__name__])


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage FastAPI application lifecycle - startup and shutdown."""
    logger = logging.getLogger(__name__)

    logger.info("Starting CSB rebates application (cloud space: %s)", config.CLOUD_SPACE)
    yield
    logger.info("CSB rebates application shutdown complete")


# Configure logging levels from environment variables
logging.basicConfig(level=getattr(logging, config.BASIC_LOGGING_LEVEL.upper(), logging.INFO))

# Token refreshes and connection pool chatter are noise at INFO.
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)

# Initialize the FastAPI app
app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for development; restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rebates_router, prefix="/api")


@app.get("/health")
async def health():
    return {"status": "ok"}


# Run the app
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
        log_level="info",
        access_log=False,
    )
