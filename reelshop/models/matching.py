"""Models for scoring shopping candidates against a reference product."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import Base64Bytes, BaseModel, Field

UNKNOWN = "unknown"

AttributeValue = Union[str, bool, None]


class ProductCategory(str, Enum):
    """Product kinds, each with its own attributes and point budget."""

    CLOTHING = "clothing"
    FOOTWEAR = "footwear"
    SUNGLASSES = "sunglasses"
    EARRINGS = "earrings"


class FusedAttribute(BaseModel):
    """Best observation of one attribute across video frames."""

    value: AttributeValue = UNKNOWN
    source_frame: int = -1
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @property
    def is_known(self) -> bool:
        return self.source_frame >= 0 and self.value not in (UNKNOWN, None)


class ReferenceProfile(BaseModel):
    """Fused attribute description of the product seen in the video."""

    category: ProductCategory = ProductCategory.CLOTHING
    primary_color: FusedAttribute = Field(default_factory=FusedAttribute)
    color_family: FusedAttribute = Field(default_factory=FusedAttribute)
    material: FusedAttribute = Field(default_factory=FusedAttribute)
    # Clothing
    color_tone: FusedAttribute = Field(default_factory=FusedAttribute)
    neckline: FusedAttribute = Field(default_factory=FusedAttribute)
    sleeve_length: FusedAttribute = Field(default_factory=FusedAttribute)
    body_length: FusedAttribute = Field(default_factory=FusedAttribute)
    fit: FusedAttribute = Field(default_factory=FusedAttribute)
    knit_type: FusedAttribute = Field(default_factory=FusedAttribute)
    texture: FusedAttribute = Field(default_factory=FusedAttribute)
    has_buttons: FusedAttribute = Field(default_factory=FusedAttribute)
    has_zipper: FusedAttribute = Field(default_factory=FusedAttribute)
    pattern_type: FusedAttribute = Field(default_factory=FusedAttribute)
    # Footwear
    finish: FusedAttribute = Field(default_factory=FusedAttribute)
    toe_shape: FusedAttribute = Field(default_factory=FusedAttribute)
    heel_height: FusedAttribute = Field(default_factory=FusedAttribute)
    heel_type: FusedAttribute = Field(default_factory=FusedAttribute)
    closure: FusedAttribute = Field(default_factory=FusedAttribute)
    upper_material: FusedAttribute = Field(default_factory=FusedAttribute)
    has_accents: FusedAttribute = Field(default_factory=FusedAttribute)
    # Sunglasses
    frame_shape: FusedAttribute = Field(default_factory=FusedAttribute)
    frame_pattern: FusedAttribute = Field(default_factory=FusedAttribute)
    frame_material: FusedAttribute = Field(default_factory=FusedAttribute)
    lens_color: FusedAttribute = Field(default_factory=FusedAttribute)
    lens_tint: FusedAttribute = Field(default_factory=FusedAttribute)
    # Earrings
    metal_color: FusedAttribute = Field(default_factory=FusedAttribute)
    metal_finish: FusedAttribute = Field(default_factory=FusedAttribute)
    earring_type: FusedAttribute = Field(default_factory=FusedAttribute)
    size: FusedAttribute = Field(default_factory=FusedAttribute)
    shape: FusedAttribute = Field(default_factory=FusedAttribute)
    has_gemstones: FusedAttribute = Field(default_factory=FusedAttribute)
    # Sunglasses and earrings
    style: FusedAttribute = Field(default_factory=FusedAttribute)
    overall_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    completeness: float = Field(default=0.0, ge=0.0, le=100.0)


class GarmentAttributes(BaseModel):
    """
    Attributes extracted from a single image, either a frame or a listing.

    One flat schema covers every category; fields that do not apply to the
    product's category stay unknown.
    """

    primary_color: str = UNKNOWN
    color_family: str = UNKNOWN
    material: str = UNKNOWN
    # Clothing
    color_tone: str = UNKNOWN
    neckline: str = UNKNOWN
    sleeve_length: str = UNKNOWN
    body_length: str = UNKNOWN
    fit: str = UNKNOWN
    knit_type: str = UNKNOWN
    texture: str = UNKNOWN
    has_buttons: bool = False
    has_zipper: bool = False
    pattern_type: Optional[str] = None
    # Footwear
    finish: str = UNKNOWN
    toe_shape: str = UNKNOWN
    heel_height: str = UNKNOWN
    heel_type: str = UNKNOWN
    closure: str = UNKNOWN
    upper_material: str = UNKNOWN
    has_accents: bool = False
    # Sunglasses
    frame_shape: str = UNKNOWN
    frame_pattern: str = UNKNOWN
    frame_material: str = UNKNOWN
    lens_color: str = UNKNOWN
    lens_tint: str = UNKNOWN
    # Earrings
    metal_color: str = UNKNOWN
    metal_finish: str = UNKNOWN
    earring_type: str = UNKNOWN
    size: str = UNKNOWN
    shape: str = UNKNOWN
    has_gemstones: bool = False
    style: str = UNKNOWN
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class FrameExtraction(BaseModel):
    frame_index: int = Field(ge=0)
    attributes: GarmentAttributes


class ShoppingCandidate(BaseModel):
    """One externally sourced listing."""

    id: str = Field(min_length=1)
    title: str = ""
    source: str = ""
    link: str = ""
    price: str = ""
    thumbnail: str = ""
    category: Optional[ProductCategory] = None
    attributes: GarmentAttributes


class ListingImage(BaseModel):
    """A listing whose attributes still have to be read from its image."""

    id: str = Field(min_length=1)
    title: str = ""
    source: str = ""
    link: str = ""
    price: str = ""
    thumbnail: str = ""
    image: Base64Bytes


class AttributeScore(BaseModel):
    """Scored comparison of one attribute."""

    attribute: str
    group: str
    reference_value: str
    candidate_value: str
    max_points: float
    similarity: float = Field(ge=0.0, le=1.0)
    weight: float = Field(ge=0.5, le=1.0)
    score: float
    reasoning: str
    is_critical: bool = False


class VerificationTier(str, Enum):
    AUTO = "auto"
    AUTO_HIGH = "auto_high"
    CREATOR_CONFIRMED = "creator_confirmed"
    BRAND_VERIFIED = "brand_verified"
    DISPUTED = "disputed"


class VerificationState(BaseModel):
    tier: VerificationTier
    confidence: float
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    dispute_reason: Optional[str] = None


class CandidateRanking(BaseModel):
    """Total score and full breakdown for one candidate."""

    rank: int = 0
    candidate_id: str
    title: str = ""
    link: str = ""
    total_score: float
    raw_score: float
    was_capped: bool = False
    capped_reason: Optional[str] = None
    attribute_scores: List[AttributeScore] = Field(default_factory=list)
    flags: List[str] = Field(default_factory=list)
    tiebreaker_used: bool = False
    visual_score: Optional[float] = None
    verification: VerificationState


class MatchRequest(BaseModel):
    """Body of POST /api/matching/score."""

    reference: ReferenceProfile
    candidates: List[ShoppingCandidate] = Field(min_length=1)
    critical_mismatch_cap: Optional[float] = Field(default=None, ge=0, le=100)


class MatchResponse(BaseModel):
    budget_version: str
    rankings: List[CandidateRanking]
    top_match: Optional[CandidateRanking] = None


class ProductMatchRequest(BaseModel):
    """Body of POST /api/matching/match. Images are base64 encoded JPEGs."""

    category: ProductCategory = ProductCategory.CLOTHING
    frames: List[Base64Bytes] = Field(min_length=1)
    candidates: List[ListingImage] = Field(min_length=1)
    reference_image: Optional[Base64Bytes] = None
    critical_mismatch_cap: Optional[float] = Field(default=None, ge=0, le=100)


class ProductMatchResponse(BaseModel):
    category: ProductCategory
    budget_version: str
    reference: ReferenceProfile
    frames_analyzed: int
    rankings: List[CandidateRanking]
    top_match: Optional[CandidateRanking] = None
    tiebreaker_used: bool = False
    costs: Dict[str, Any] = Field(default_factory=dict)
