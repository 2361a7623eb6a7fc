"""FastAPI dependency injection -- Depends() patterns using app.state from lifespan."""

from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request

from codelib.config import Settings, get_settings
from codelib.database import Database
from codelib.library.coherence import CoherenceScheduler
from codelib.library.hierarchy import HierarchyPipeline
from codelib.library.resolution import ResolutionCascade


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_pipeline(request: Request) -> HierarchyPipeline:
    return request.app.state.pipeline


def get_scheduler(request: Request) -> CoherenceScheduler:
    return request.app.state.scheduler


def get_cascade(request: Request) -> ResolutionCascade:
    return request.app.state.cascade


async def verify_api_key(
    x_api_key: Annotated[Optional[str], Header()] = None,
):
    """API key gate. Empty API_KEY env var = dev mode (all requests pass)."""
    settings = get_settings()
    required_key = settings.api_key
    if required_key and x_api_key != required_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


# Type aliases for cleaner route signatures
DB = Annotated[Database, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
Pipeline = Annotated[HierarchyPipeline, Depends(get_pipeline)]
Scheduler = Annotated[CoherenceScheduler, Depends(get_scheduler)]
Cascade = Annotated[ResolutionCascade, Depends(get_cascade)]
