"""Storefront entry published for a completed job."""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from reelshop.models.analysis import DetectedProduct, SeoFields
from reelshop.models.job import utc_now


class StoreTheme(BaseModel):
    name: str = "Reelshop Noir"
    colors: Dict[str, str] = Field(
        default_factory=lambda: {
            "background": "#3D2B3D",
            "background_alt": "#2D1F2D",
            "accent": "#A38A7E",
            "accent_hover": "#BFA393",
            "text": "#F5F5F5",
            "text_muted": "#B8A8B8",
        }
    )


class StoreEntry(BaseModel):
    """A generated storefront."""

    id: str
    job_id: str
    name: str
    creator: str = "Content Creator"
    creator_handle: Optional[str] = None
    product_count: int = Field(default=0, ge=0)
    views: int = 0
    status: Literal["draft", "live", "archived"] = "live"
    featured: bool = True
    theme: StoreTheme = Field(default_factory=StoreTheme)
    products: List[DetectedProduct] = Field(default_factory=list)
    seo: SeoFields = Field(default_factory=SeoFields)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
