"""Health check router -- DB status, pending coherence checks, threshold summary."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from sqlalchemy import text

from codelib.api.dependencies import DB, AppSettings

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/")
async def root():
    return {"service": "Code Library Graph API", "version": "1.0.0"}


@router.get("/health")
async def health(request: Request, db: DB, settings: AppSettings):
    database = "ok"
    try:
        with db.get_session() as session:
            session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check database query failed: {e}")
        database = "unavailable"

    return {
        "status": "healthy" if database == "ok" else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": database,
        "pending_coherence_checks": request.app.state.scheduler.pending,
        "config": {
            # Resolution
            "auto_reuse_threshold": settings.auto_reuse_threshold,
            "search_threshold": settings.search_threshold,
            "rerank_top": settings.rerank_top,
            # Coherence
            "variant_threshold": settings.variant_threshold,
            "split_threshold": settings.split_threshold,
            "merge_threshold": settings.merge_threshold,
            "split_min_cohesion": settings.split_min_cohesion,
            "coherence_budget": settings.coherence_budget,
            "coherence_cooldown_seconds": settings.coherence_cooldown_seconds,
            # Embeddings
            "embedding_model": settings.embedding_model,
            "embedding_dim": settings.embedding_dim,
        },
    }
