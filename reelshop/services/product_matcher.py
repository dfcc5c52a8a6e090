"""End-to-end product matching: frames and listing images in, ranked listings out."""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from reelshop.config import Settings, get_settings
from reelshop.models.matching import (
    FrameExtraction,
    GarmentAttributes,
    ProductCategory,
    ProductMatchRequest,
    ProductMatchResponse,
    ShoppingCandidate,
)
from reelshop.services.matching import (
    BUDGET_VERSION,
    AttributeMatcher,
    apply_visual_tiebreaker,
    fuse_frame_extractions,
)
from reelshop.services.model_registry import ExtractionTask
from reelshop.services.model_router import CostLedger, ModelRouter, create_model_router
from reelshop.utils.errors import CapabilityError, MatchingError

logger = logging.getLogger(__name__)

_EXTRACTION_HEADER = """You are a precise {kind} attribute extractor.
Extract these attributes. Use "not_visible" if an attribute cannot be determined.
Respond with flat JSON only (no nested objects), using exactly these keys:
"""

EXTRACTION_PROMPTS: Mapping[ProductCategory, str] = {
    ProductCategory.CLOTHING: _EXTRACTION_HEADER.format(kind="clothing")
    + """- primary_color: exact color name (e.g. "olive", "navy blue")
- color_family: broad family (green, blue, neutral, brown, pink, red, purple, black, white, gray)
- color_tone: warm, cool, neutral, muted, bright, light or dark
- neckline: crew, v-neck, mock, turtleneck, off-shoulder, scoop, boat or collared
- sleeve_length: long, short, three-quarter or sleeveless
- body_length: crop, regular or longline
- fit: slim, regular, relaxed or oversized
- knit_type: chunky, cable, ribbed, waffle, jersey, fine knit or smooth
- material: cotton, wool, cashmere, acrylic, polyester or blend
- texture: ribbed, smooth, fuzzy, textured or cable
- has_buttons: true/false
- has_zipper: true/false
- pattern_type: solid, striped, floral, plaid or graphic
- confidence: 0.0-1.0""",
    ProductCategory.FOOTWEAR: _EXTRACTION_HEADER.format(kind="footwear")
    + """- primary_color: exact color name
- color_family: broad family
- material: leather, suede, canvas, synthetic or fabric
- finish: matte, glossy, patent, suede or textured
- toe_shape: round, pointed, square or almond
- heel_height: flat, low, mid or high
- heel_type: none, block, stiletto, wedge or platform
- closure: slip-on, lace-up, buckle, zipper or velcro
- upper_material: leather, suede, canvas or synthetic
- has_accents: true/false (buckles, bows, studs, tassels)
- confidence: 0.0-1.0""",
    ProductCategory.SUNGLASSES: _EXTRACTION_HEADER.format(kind="eyewear")
    + """- primary_color: frame color (exact)
- color_family: broad family
- material: same as frame_material
- frame_material: plastic, metal, acetate or mixed
- frame_pattern: solid, tortoiseshell, gradient or patterned
- frame_shape: oversized, round, square, cat-eye, aviator, rectangular or oval
- lens_color: black, brown, gray, blue, gradient or mirrored
- lens_tint: dark, medium or light
- style: classic, trendy, sporty, vintage or luxury
- confidence: 0.0-1.0""",
    ProductCategory.EARRINGS: _EXTRACTION_HEADER.format(kind="jewelry")
    + """- primary_color: metal color (gold, silver, rose gold, bronze, copper)
- color_family: yellow, white, rose or bronze
- material: metal description
- metal_color: gold, silver, rose gold or bronze
- metal_finish: polished, matte, brushed or hammered
- earring_type: hoop, stud, drop, dangle, huggie, chandelier or threader
- size: small, medium, large or oversized
- shape: round, oval, geometric or irregular
- has_gemstones: true/false
- style: minimalist, statement, classic, bohemian or trendy
- confidence: 0.0-1.0""",
}

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def parse_attributes(data: Mapping[str, Any]) -> GarmentAttributes:
    """
    Coerce a model reply into attributes.

    camelCase keys are accepted. Missing or unusable values keep their
    defaults, and a confidence outside (0, 1] falls back to 0.5.
    """
    values = {_snake(str(key)): value for key, value in data.items()}
    parsed: Dict[str, Any] = {}
    for name, field in GarmentAttributes.model_fields.items():
        value = values.get(name)
        if value is None or value == "":
            continue
        if name == "confidence":
            if isinstance(value, (int, float)) and not isinstance(value, bool) and 0 < value <= 1:
                parsed[name] = float(value)
        elif field.annotation is bool:
            parsed[name] = value is True or str(value).strip().lower() == "true"
        elif not isinstance(value, (dict, list)):
            parsed[name] = str(value).strip()
    return GarmentAttributes(**parsed)


async def extract_attributes(
    router: ModelRouter,
    image: bytes,
    category: ProductCategory,
    purpose: str,
    task: ExtractionTask = ExtractionTask.CANDIDATE_EXTRACTION,
    ledger: Optional[CostLedger] = None,
) -> Optional[GarmentAttributes]:
    """
    Read one image's attributes with the model routed for ``task``.

    Returns None when the model call fails or its reply holds no JSON
    object. Routing misconfiguration still raises CapabilityError.
    """
    try:
        result = await router.execute_vision_task(
            task, [image], EXTRACTION_PROMPTS[category], f"Context: {purpose}", ledger=ledger
        )
    except CapabilityError:
        raise
    except Exception as e:
        logger.error(f"Attribute extraction failed for {purpose}: {e}")
        return None

    if not result.data:
        logger.warning(f"No attributes in model reply for {purpose}")
        return None
    return parse_attributes(result.data)


async def extract_frame_attributes(
    router: ModelRouter,
    frames: Sequence[bytes],
    category: ProductCategory,
    ledger: Optional[CostLedger] = None,
) -> List[FrameExtraction]:
    """Extract attributes from each video frame; frames that fail are skipped."""
    extractions: List[FrameExtraction] = []
    for index, frame in enumerate(frames):
        attributes = await extract_attributes(
            router,
            frame,
            category,
            f"Frame {index} of a video, {category.value} attributes",
            task=ExtractionTask.REFERENCE_EXTRACTION,
            ledger=ledger,
        )
        if attributes is not None:
            extractions.append(FrameExtraction(frame_index=index, attributes=attributes))
    return extractions


class ProductMatcher:
    """
    Matches the product seen in a video against shopping listings.

    Steps: per-frame extraction, fusion into a reference profile, listing
    extraction, attribute scoring, then the visual tiebreaker when a
    reference image is supplied.
    """

    def __init__(self, router: ModelRouter) -> None:
        self.router = router

    async def match(
        self, request: ProductMatchRequest, ledger: Optional[CostLedger] = None
    ) -> ProductMatchResponse:
        """
        Run the full matching pipeline for one product.

        Raises:
            MatchingError: No frame yielded any attributes
        """
        ledger = ledger if ledger is not None else CostLedger()
        category = request.category
        logger.info(
            f"Matching {category.value} product: {len(request.frames)} frames, "
            f"{len(request.candidates)} listings"
        )

        extractions = await extract_frame_attributes(self.router, request.frames, category, ledger)
        if not extractions:
            raise MatchingError("No attributes extracted from frames")
        reference = fuse_frame_extractions(extractions, category)

        candidates: List[ShoppingCandidate] = []
        for listing in request.candidates:
            attributes = await extract_attributes(
                self.router,
                listing.image,
                category,
                f"Shopping candidate: {listing.title or listing.id}",
                ledger=ledger,
            )
            if attributes is None:
                logger.warning(f"Dropping listing {listing.id}: no attributes extracted")
                continue
            candidates.append(
                ShoppingCandidate(
                    **listing.model_dump(exclude={"image"}), category=category, attributes=attributes
                )
            )

        rankings = AttributeMatcher(request.critical_mismatch_cap).rank(reference, candidates)
        if request.reference_image:
            images = {listing.id: listing.image for listing in request.candidates}
            rankings = await apply_visual_tiebreaker(
                rankings, self.router, request.reference_image, images, ledger
            )

        logger.info(
            f"Ranked {len(rankings)} listings from {len(extractions)} frames, "
            f"${ledger.total_cost:.5f}"
        )
        return ProductMatchResponse(
            category=category,
            budget_version=BUDGET_VERSION,
            reference=reference,
            frames_analyzed=len(extractions),
            rankings=rankings,
            top_match=rankings[0] if rankings else None,
            tiebreaker_used=any(r.tiebreaker_used for r in rankings),
            costs=ledger.summary(),
        )


def create_product_matcher(settings: Optional[Settings] = None) -> ProductMatcher:
    """Create a ProductMatcher backed by the configured model router."""
    return ProductMatcher(create_model_router(settings or get_settings()))
