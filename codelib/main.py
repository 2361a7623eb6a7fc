"""
Self-organizing Code Library - Main Entry Point.
FastAPI server and CLI interface.
"""

import argparse
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import health, items
from .api.dependencies import verify_api_key
from .config import Settings, get_settings
from .database import Database, get_database
from .library.coherence import CoherenceEngine, CoherenceScheduler
from .library.hierarchy import HierarchyPipeline
from .library.oracle import LibraryOracle
from .library.resolution import ResolutionCascade
from .tools.embeddings import EmbeddingTool

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)

# Suppress noisy loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


class Library:
    """The wired-up library: storage, embedder, oracle and both pipelines."""

    def __init__(
        self,
        db: Optional[Database] = None,
        embedder=None,
        oracle: Optional[LibraryOracle] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.db = db or get_database()
        self.embedder = embedder or EmbeddingTool()
        self.oracle = oracle or LibraryOracle()

        self.engine = CoherenceEngine(self.db, self.embedder, self.oracle, self.settings)
        self.scheduler = CoherenceScheduler(self.engine)
        self.cascade = ResolutionCascade(
            self.db, self.embedder, self.oracle, self.settings,
            on_family_touched=self.scheduler.schedule,
        )
        self.pipeline = HierarchyPipeline(self.db, self.cascade, self.oracle, self.settings)


def create_app(
    db: Optional[Database] = None,
    embedder=None,
    oracle: Optional[LibraryOracle] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the API. Collaborators default to the configured providers."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Starting code library API...")
        library = Library(db=db, embedder=embedder, oracle=oracle, settings=settings)
        library.db.create_tables()

        app.state.settings = library.settings
        app.state.db = library.db
        app.state.engine = library.engine
        app.state.scheduler = library.scheduler
        app.state.cascade = library.cascade
        app.state.pipeline = library.pipeline
        logger.info("Library ready")
        yield
        # Shutdown: let detached coherence checks finish
        await library.scheduler.drain()

    app = FastAPI(
        title="Self-organizing Code Library",
        description="Decomposes code submissions into a deduplicated, self-organizing library graph",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(
        items.router,
        prefix="/api/v1/items",
        tags=["items"],
        dependencies=[Depends(verify_api_key)],
    )
    return app


app = create_app()


# CLI Runner
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Self-organizing Code Library")
    parser.add_argument("--server", action="store_true", help="Start the FastAPI server")
    parser.add_argument("--port", type=int, default=8000, help="Server port (default: 8000)")
    parser.add_argument("--decompose", type=int, metavar="ITEM_ID", help="Decompose a stored item")
    parser.add_argument("--coherence", type=int, metavar="ITEM_ID", help="Run a coherence check on a family parent")
    return parser


async def cli_main(args: argparse.Namespace):
    """Run the pipelines on stored items from the command line."""
    library = Library()
    library.db.create_tables()

    if args.decompose is not None:
        result = await library.pipeline.decompose_item(args.decompose)
        print(json.dumps(result.model_dump(mode="json"), indent=2))
        await library.scheduler.drain()

    if args.coherence is not None:
        report = await library.engine.coherence_check(args.coherence, ignore_cooldown=True)
        print(json.dumps(report.model_dump(mode="json"), indent=2))


def main():
    """Entry point for CLI."""
    parser = build_parser()
    args = parser.parse_args()

    if args.server:
        import uvicorn
        logger.info(f"Starting server on port {args.port}...")
        uvicorn.run(app, host="0.0.0.0", port=args.port)
    elif args.decompose is None and args.coherence is None:
        parser.print_help()
    else:
        asyncio.run(cli_main(args))


if __name__ == "__main__":
    main()
