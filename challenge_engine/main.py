import logging
import sqlite3
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from challenge_engine.db import init_db

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

GENERIC_ERROR = "An error occurred while processing your request"


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Challenge engine started")
    yield


app = FastAPI(title="Challenge Session Engine", version="0.1.0", lifespan=lifespan)


@app.exception_handler(sqlite3.Error)
async def database_error(request: Request, exc: sqlite3.Error):
    logger.exception(f"Database error on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": GENERIC_ERROR})


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": GENERIC_ERROR})


@app.get("/health")
async def health():
    return {"status": "ok"}


# Import routers after app is created to avoid circular imports
from challenge_engine.challenges.router import router as challenges_router  # noqa: E402

app.include_router(challenges_router)
