"""Cache inspection and maintenance routes."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from crm_cache.core.container import container
from crm_cache.core.logging import get_logger
from crm_cache.services.cache import CacheManager

logger = get_logger(__name__)
router = APIRouter(prefix="/api/cache", tags=["cache"])


@router.get("/stats")
async def get_cache_stats(
    cache: CacheManager = Depends(lambda: container.cache())
):
    """Counters, tier sizes and hit rate."""
    return {"success": True, "stats": await cache.get_stats()}


@router.get("/metrics")
async def get_cache_metrics(
    time_range_ms: int = Query(default=3_600_000, ge=1),
    cache: CacheManager = Depends(lambda: container.cache())
):
    """Per-operation aggregates over the recent window."""
    return {"success": True, "metrics": await cache.get_metrics(time_range_ms)}


@router.get("/keys")
async def list_cache_keys(
    pattern: str = Query(default="*"),
    cache: CacheManager = Depends(lambda: container.cache())
):
    keys = await cache.keys(pattern)
    return {"success": True, "keys": keys, "count": len(keys)}


@router.get("/calculations")
async def list_calculations(
    sqft: Optional[float] = Query(default=None, gt=0),
    cache: CacheManager = Depends(lambda: container.cache())
):
    """Calculation history, newest first."""
    history = await cache.get_calculation_history(sqft)
    return {"success": True, "calculations": history, "count": len(history)}


@router.delete("/tags/{tag}")
async def invalidate_tag(
    tag: str,
    cache: CacheManager = Depends(lambda: container.cache())
):
    """Delete every entry carrying the tag."""
    deleted = await cache.delete_by_tags(tag)
    logger.info("Cache tag invalidated", tag=tag, deleted=deleted)
    return {"success": True, "deleted": deleted}


@router.post("/cleanup")
async def run_cleanup(
    cache: CacheManager = Depends(lambda: container.cache())
):
    """Evict expired entries from both tiers now."""
    return {"success": True, "evicted": await cache.cleanup()}
