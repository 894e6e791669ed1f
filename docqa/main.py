from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .db import dispose_engine, init_db
from .dependencies import get_document_service
from .logging_setup import configure_logging
from .routers import documents, query

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
    await init_db()
    logger.info("app_started", skip_db=settings.SKIP_DB, embed_provider=settings.EMBED_PROVIDER)
    yield
    if get_document_service.cache_info().currsize:
        await get_document_service().drain()
    await dispose_engine()
    logger.info("app_stopped")


app = FastAPI(title="DocQA", version="0.2.0", lifespan=lifespan)
app.add_middleware(CORSMiddleware,
    allow_origins=[o.strip() for o in settings.ALLOWED_ORIGINS.split(",")],
    allow_credentials=True, allow_methods=["*"], allow_headers=["*"])

@app.get("/health")
async def health(): return {"status": "ok"}

app.include_router(documents.router, prefix="/v1")
app.include_router(query.router, prefix="/v1")
