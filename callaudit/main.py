"""Call audit FastAPI application."""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from callaudit.api.audits import router as audits_router
from callaudit.api.health import router as health_router
from callaudit.config import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Call Audit - Transcript Compliance Audits",
    description="Audits call transcripts against weighted rubrics and records reviewable verdicts",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router, tags=["Health"])
app.include_router(audits_router, prefix="/v1", tags=["Audits"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {"service": "callaudit", "version": "0.1.0", "docs": "/docs"}
