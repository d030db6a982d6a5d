import asyncio
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from app.config import get_settings
from app.core.errors import ChatError, HTTP_STATUS_BY_KIND
from app.db import postgres
from app.api import chat, system


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


async def connect_postgres() -> None:
    settings = get_settings()
    logger.info(
        f"Connecting to PostgreSQL at {settings.postgres_host}:{settings.postgres_port}"
    )

    for attempt in range(10):
        try:
            await postgres.create_pool()
            break
        except Exception as e:
            if attempt < 9:
                logger.warning(
                    f"DB connection attempt {attempt + 1} failed: {e}. Retrying in 2s..."
                )
                await asyncio.sleep(2)
            else:
                logger.error("Failed to connect to database after 10 attempts")
                raise

    await postgres.ensure_schema()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting Parley backend...")

    if settings.store_backend == "postgres":
        await connect_postgres()

    configured = settings.configured_providers()
    if not configured:
        logger.warning("No provider API keys configured; chat requests will fail until one is set")
    else:
        logger.info("Providers configured: {}", ", ".join(configured))

    logger.info("Parley backend ready")
    yield

    await postgres.close_pool()
    logger.info("Parley backend shut down")


app = FastAPI(
    title="Parley API",
    version="0.1.0",
    description="Conversation context and streaming engine for hosted chat models",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    status_code = HTTP_STATUS_BY_KIND.get(exc.kind, 500)
    logger.warning("[api] {} {} -> {} ({})", request.method, request.url.path, status_code, exc.kind.value)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


app.include_router(chat.router)
app.include_router(system.router)


@app.get("/")
async def root():
    return {"message": "Parley API", "version": "0.1.0", "docs": "/docs"}
