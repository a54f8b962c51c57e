"""
Target framework adoption endpoints
"""

from fastapi import APIRouter, Depends, Query
from typing import List, Optional
import logging

from api.dependencies import get_tfm_cache
from analytics.cache import TfmAdoptionCache
from schemas.api import TfmAdoptionItem, TfmFamilyItem

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/framework", tags=["Frameworks"])


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


@router.get("/available", response_model=List[TfmFamilyItem])
async def get_available_frameworks(cache: TfmAdoptionCache = Depends(get_tfm_cache)):
    """Frameworks with adoption data, grouped by family"""
    groups = await cache.get_available_tfms()
    return [TfmFamilyItem(family=g.family, tfms=g.tfms) for g in groups]


@router.get("/adoption", response_model=List[TfmAdoptionItem])
async def get_framework_adoption(
    tfms: Optional[str] = Query(None, max_length=1000, description="Comma-separated short names, e.g. net8.0,net9.0"),
    families: Optional[str] = Query(None, max_length=200, description="Comma-separated families, e.g. .NET"),
    cache: TfmAdoptionCache = Depends(get_tfm_cache)
):
    """
    Monthly adoption series. Without filters every framework is returned.
    """
    points = await cache.get_adoption(_split(tfms), _split(families))
    return [TfmAdoptionItem(**p.model_dump()) for p in points]
