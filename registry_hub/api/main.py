"""FastAPI application for the registry hub.

Exposes company search and detail lookups aggregated from the configured
registries, plus cache statistics and maintenance.  Upstream trouble is
reported in the per-source diagnostics of each answer and never turns
into a server error.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from registry_hub import __version__
from registry_hub.core.config import Config
from registry_hub.core.errors import ValidationError
from registry_hub.core.filters import SearchFilters
from registry_hub.core.logging_setup import configure_from_config
from registry_hub.core.service import RegistryHub

logger = logging.getLogger(__name__)


# Pydantic models
class DiagnosticModel(BaseModel):
    """Outcome of one source for one request."""

    source: str
    status: str
    error: Optional[Dict[str, Any]] = None
    latency_ms: float = 0.0
    record_count: int = 0
    dropped: int = 0
    malformed: int = 0


class AggregatedResponse(BaseModel):
    """Merged answer to a search or a detail lookup."""

    query: str
    mode: str
    total: int
    records: List[Dict[str, Any]]
    diagnostics: Dict[str, DiagnosticModel]
    from_cache: bool
    generated_at: datetime
    matched: Optional[int] = None
    page: Optional[int] = None


class CacheStatsResponse(BaseModel):
    """Cache statistics for the operational dashboard."""

    hits: int
    misses: int
    sets: int
    errors: int
    total_requests: int
    hit_rate_percent: float
    backend: str
    connected: bool
    degraded: bool
    fallback_entries: Optional[int] = None
    default_ttl: int


class CacheClearResponse(BaseModel):
    cleared: int = Field(..., description="Number of entries removed")


def _split_sources(sources: Optional[str]) -> Optional[List[str]]:
    if sources is None:
        return None
    return [name.strip() for name in sources.split(",") if name.strip()]


def get_hub(request: Request) -> RegistryHub:
    """Dependency returning the service built at startup."""
    return request.app.state.hub


def create_app(config: Optional[Config] = None, hub: Optional[RegistryHub] = None) -> FastAPI:
    """Create the application.

    Args:
        config: Configuration (loaded from the usual locations if not provided)
        hub: Prebuilt service; it is still started and closed by the lifespan
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup and shutdown events."""
        # === STARTUP ===
        nonlocal config, hub
        if hub is None:
            config = config or Config()
            configure_from_config(config)
            hub = RegistryHub.from_config(config)
        app.state.hub = hub
        hub.start()
        logger.info("Registry hub API ready")

        yield

        # === SHUTDOWN ===
        logger.info("Registry hub API shutting down...")
        await hub.close()

    app = FastAPI(
        title="Registry Hub API",
        description="Company data aggregated from the French business registries",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "DELETE"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": exc.message, "kind": exc.kind.value},
        )

    @app.get("/health")
    async def health_check(hub: RegistryHub = Depends(get_hub)):
        """Health check endpoint."""
        cache = hub.cache_stats()
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "cache_connected": cache["connected"],
            "persistence_pending": hub.persister.pending,
        }

    @app.get("/companies/search", response_model=AggregatedResponse)
    async def search_companies(
        request: Request,
        q: str = Query(..., description="Company name or identifier"),
        sources: Optional[str] = Query(None, description="Comma-separated source names"),
        limit: int = Query(20, ge=1, le=100),
        legal_form: Optional[str] = Query(None, description="Part of the legal form label"),
        activity_code: Optional[str] = Query(None, description="Activity code prefix"),
        active: Optional[bool] = Query(None, description="Only active or only closed companies"),
        sort_by: str = Query("relevance", description="relevance, name, creation_date or capital"),
        page: int = Query(1, ge=1),
        page_size: Optional[int] = Query(None, ge=1, le=100),
        hub: RegistryHub = Depends(get_hub),
    ):
        """Search every selected registry, optionally filtered and paged."""
        caller = request.client.host if request.client else "anonymous"
        logger.info(f"Search request: {q!r} sources={sources or 'default'}")
        filters = SearchFilters(
            legal_form=legal_form,
            activity_code=activity_code,
            active=active,
            sort_by=sort_by,
            page=page,
            page_size=page_size,
        )
        result = await hub.search(
            q, sources=_split_sources(sources), caller=caller, limit=limit, filters=filters
        )
        return result.to_dict()

    @app.get("/companies/{registry_id}", response_model=AggregatedResponse)
    async def get_company(
        request: Request,
        registry_id: str,
        sources: Optional[str] = Query(None, description="Comma-separated source names"),
        hub: RegistryHub = Depends(get_hub),
    ):
        """Detail view of one company."""
        caller = request.client.host if request.client else "anonymous"
        result = await hub.enrich(registry_id, sources=_split_sources(sources), caller=caller)
        return result.to_dict()

    @app.get("/cache/stats", response_model=CacheStatsResponse)
    async def cache_stats(hub: RegistryHub = Depends(get_hub)):
        """Cache hit/miss counters and backend state."""
        return hub.cache_stats()

    @app.delete("/cache", response_model=CacheClearResponse)
    async def clear_cache(hub: RegistryHub = Depends(get_hub)):
        """Drop every cached result."""
        cleared = await hub.clear_cache()
        logger.info(f"Cache cleared ({cleared} entries)")
        return {"cleared": cleared}

    return app


app = create_app()
