"""Attribute matching engine: ranks shopping candidates against a reference product.

Scoring is pure computation over already-extracted attributes. Every
product category has its own point budget: each attribute has a fixed share
of 100 points and its score is

    max_points * similarity * confidence_weight

where similarity comes from a family-grouped fuzzy comparison (colors,
tones, knits) or an exact comparison (cut and details), and the weight is
the mean of the reference and candidate confidences clamped to [0.5, 1.0].
"""

import logging
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Literal, Mapping, NamedTuple, Optional, Sequence, Tuple

from reelshop.models.matching import (
    UNKNOWN,
    AttributeScore,
    CandidateRanking,
    FrameExtraction,
    FusedAttribute,
    GarmentAttributes,
    ProductCategory,
    ReferenceProfile,
    ShoppingCandidate,
    VerificationState,
    VerificationTier,
)
from reelshop.services.model_registry import ExtractionTask
from reelshop.services.model_router import CostLedger, ModelRouter

logger = logging.getLogger(__name__)

BUDGET_VERSION = "v2"

# Similarity levels for family-grouped attributes. Hand-picked, not fitted
# to labeled data.
EXACT_SIMILARITY = 1.0
SHADE_SIMILARITY = 0.9
FAMILY_SIMILARITY = 0.7
TEXTURE_MISMATCH_SIMILARITY = 0.5

MIN_WEIGHT = 0.5
MAX_WEIGHT = 1.0

AUTO_HIGH_THRESHOLD = 85.0
CONFIRMATION_BONUS = 10.0
TIEBREAKER_MAX_GAP = 5.0
TIEBREAKER_MIN_SCORE = 75.0

MISSING_VALUES = frozenset({"", UNKNOWN, "not_visible", "none"})

# ==================== Family tables ====================

COLOR_FAMILIES: Mapping[str, Tuple[str, ...]] = {
    "green": ("olive", "olive green", "sage", "forest green", "army green", "khaki", "moss", "dark green", "hunter green"),
    "blue": ("navy", "navy blue", "royal blue", "sky blue", "teal", "cobalt", "denim blue"),
    "neutral": ("beige", "cream", "ivory", "tan", "taupe", "camel", "oatmeal", "sand"),
    "brown": ("chocolate", "espresso", "chestnut", "cognac", "rust", "terracotta"),
    "pink": ("blush", "rose", "coral", "salmon", "dusty pink", "hot pink"),
    "red": ("burgundy", "wine", "maroon", "crimson", "scarlet"),
    "purple": ("lavender", "lilac", "plum", "violet", "mauve"),
    "black": ("charcoal", "jet black", "onyx"),
    "white": ("off-white", "ivory", "snow", "cream white"),
    "gray": ("grey", "silver", "slate", "charcoal gray", "heather"),
}

TONE_FAMILIES: Mapping[str, Tuple[str, ...]] = {
    "warm": ("golden", "earthy", "honey", "amber"),
    "cool": ("icy", "ashy", "blue-toned"),
    "neutral": ("balanced", "natural"),
    "muted": ("dusty", "soft", "desaturated", "faded"),
    "bright": ("vivid", "saturated", "bold", "neon"),
    "light": ("pale", "pastel"),
    "dark": ("deep", "rich"),
}

KNIT_FAMILIES: Mapping[str, Tuple[str, ...]] = {
    "textured_chunky": ("chunky", "cable", "cable knit", "basketweave", "popcorn"),
    "textured_fine": ("ribbed", "rib knit", "waffle", "pointelle", "thermal"),
    "smooth": ("jersey", "smooth", "fine knit", "stockinette", "flat knit"),
}

# Spelling variants folded together before an exact comparison
NECKLINE_VARIANTS: Mapping[str, Tuple[str, ...]] = {
    "crew": ("crewneck", "crew neck", "round", "round neck"),
    "v-neck": ("v neck", "vneck"),
    "mock": ("mock neck", "mockneck", "funnel", "funnel neck"),
    "turtleneck": ("turtle neck", "turtle", "rollneck"),
    "off-shoulder": ("off shoulder", "bardot"),
    "scoop": ("scoop neck",),
    "boat": ("boat neck", "boatneck", "bateau"),
    "collared": ("collar", "polo"),
}

SLEEVE_VARIANTS: Mapping[str, Tuple[str, ...]] = {
    "long": ("full length", "full"),
    "short": ("cap", "cap sleeve"),
    "three-quarter": ("3/4", "three quarter", "3-quarter", "elbow"),
    "sleeveless": ("tank", "no sleeve"),
}

LENGTH_VARIANTS: Mapping[str, Tuple[str, ...]] = {
    "crop": ("cropped", "short", "above waist"),
    "regular": ("normal", "standard", "at waist", "hip length"),
    "longline": ("long", "tunic", "below hip"),
}

TOE_SHAPE_VARIANTS: Mapping[str, Tuple[str, ...]] = {
    "round": ("rounded", "round toe"),
    "pointed": ("pointy", "pointed toe"),
    "square": ("square toe", "squared"),
    "almond": ("almond toe",),
}

HEEL_HEIGHT_VARIANTS: Mapping[str, Tuple[str, ...]] = {
    "flat": ("flats", "no heel"),
    "low": ("kitten", "kitten heel", "low heel"),
    "mid": ("medium", "mid heel", "mid-height"),
    "high": ("high heel", "tall"),
}

SHOE_CLOSURE_VARIANTS: Mapping[str, Tuple[str, ...]] = {
    "slip-on": ("slip on", "slipon", "pull-on"),
    "lace-up": ("lace up", "laces", "laced"),
    "buckle": ("buckled", "ankle strap"),
    "zipper": ("zip", "side zip"),
    "velcro": ("hook and loop",),
}

FRAME_SHAPE_VARIANTS: Mapping[str, Tuple[str, ...]] = {
    "cat-eye": ("cat eye", "cateye"),
    "aviator": ("pilot", "teardrop"),
    "rectangular": ("rectangle",),
    "oversized": ("oversize",),
}

FRAME_PATTERN_VARIANTS: Mapping[str, Tuple[str, ...]] = {
    "tortoiseshell": ("tortoise", "tortoise shell", "havana"),
    "solid": ("plain",),
}

METAL_COLOR_VARIANTS: Mapping[str, Tuple[str, ...]] = {
    "gold": ("yellow gold", "gold tone", "gold-tone"),
    "silver": ("sterling silver", "silver tone", "silver-tone"),
    "rose gold": ("rose-gold", "rose gold tone", "pink gold"),
}

EARRING_TYPE_VARIANTS: Mapping[str, Tuple[str, ...]] = {
    "hoop": ("hoops",),
    "stud": ("studs",),
    "huggie": ("huggies", "huggie hoop"),
    "drop": ("drops", "dangle", "dangling"),
}


# ==================== Point budgets ====================


class AttributeRule(NamedTuple):
    """How one attribute is compared and how many points it carries."""

    name: str
    label: str
    group: str
    max_points: float
    kind: Literal["fuzzy", "exact", "partial", "flag"]
    table: Optional[Mapping[str, Tuple[str, ...]]] = None
    critical: bool = False
    # Shared keyword that earns partial credit on an exact mismatch
    keyword: Optional[str] = None
    keyword_similarity: float = 0.0


CLOTHING_BUDGET: Tuple[AttributeRule, ...] = (
    AttributeRule("primary_color", "Primary Color", "color", 25, "fuzzy", COLOR_FAMILIES),
    AttributeRule("color_tone", "Color Tone", "color", 15, "fuzzy", TONE_FAMILIES),
    AttributeRule("neckline", "Neckline", "style", 10, "exact", NECKLINE_VARIANTS, critical=True),
    AttributeRule("sleeve_length", "Sleeves", "style", 8, "exact", SLEEVE_VARIANTS, critical=True),
    AttributeRule("body_length", "Length", "style", 8, "exact", LENGTH_VARIANTS, critical=True),
    AttributeRule("fit", "Fit", "style", 4, "exact"),
    AttributeRule("knit_type", "Knit Type", "material", 12, "fuzzy", KNIT_FAMILIES),
    AttributeRule("texture", "Texture", "material", 8, "partial"),
    AttributeRule("closures", "Closures", "details", 5, "exact"),
    AttributeRule("pattern_type", "Pattern", "details", 5, "exact"),
)

FOOTWEAR_BUDGET: Tuple[AttributeRule, ...] = (
    AttributeRule("primary_color", "Primary Color", "color", 30, "fuzzy", COLOR_FAMILIES),
    AttributeRule("toe_shape", "Toe Shape", "style", 15, "exact", TOE_SHAPE_VARIANTS, critical=True),
    AttributeRule("heel_height", "Heel Height", "style", 10, "exact", HEEL_HEIGHT_VARIANTS, critical=True),
    AttributeRule("closure", "Closure", "style", 10, "exact", SHOE_CLOSURE_VARIANTS, critical=True),
    AttributeRule("finish", "Finish", "material", 15, "exact", keyword="gloss", keyword_similarity=2 / 3),
    AttributeRule("upper_material", "Material", "material", 10, "exact", keyword="leather", keyword_similarity=0.7),
    AttributeRule("has_accents", "Accents", "details", 10, "flag"),
)

SUNGLASSES_BUDGET: Tuple[AttributeRule, ...] = (
    AttributeRule("primary_color", "Frame Color", "color", 25, "fuzzy", COLOR_FAMILIES),
    AttributeRule("lens_color", "Lens Color", "color", 15, "exact"),
    AttributeRule("frame_shape", "Frame Shape", "style", 25, "exact", FRAME_SHAPE_VARIANTS, critical=True),
    AttributeRule("style", "Style", "style", 10, "exact"),
    AttributeRule("frame_material", "Frame Material", "material", 10, "exact"),
    AttributeRule("frame_pattern", "Frame Pattern", "details", 15, "exact", FRAME_PATTERN_VARIANTS, critical=True),
)

EARRINGS_BUDGET: Tuple[AttributeRule, ...] = (
    AttributeRule("metal_color", "Metal Color", "color", 30, "exact", METAL_COLOR_VARIANTS, critical=True),
    AttributeRule("earring_type", "Earring Type", "style", 30, "exact", EARRING_TYPE_VARIANTS, critical=True),
    AttributeRule("size", "Size", "style", 15, "exact"),
    AttributeRule("shape", "Shape", "style", 10, "exact"),
    AttributeRule("metal_finish", "Metal Finish", "material", 10, "exact"),
    AttributeRule("style", "Style", "details", 5, "exact"),
)

POINT_BUDGETS: Mapping[ProductCategory, Tuple[AttributeRule, ...]] = {
    ProductCategory.CLOTHING: CLOTHING_BUDGET,
    ProductCategory.FOOTWEAR: FOOTWEAR_BUDGET,
    ProductCategory.SUNGLASSES: SUNGLASSES_BUDGET,
    ProductCategory.EARRINGS: EARRINGS_BUDGET,
}

GROUP_BUDGETS: Mapping[ProductCategory, Mapping[str, float]] = {
    ProductCategory.CLOTHING: {"color": 40, "style": 30, "material": 20, "details": 10},
    ProductCategory.FOOTWEAR: {"color": 30, "style": 35, "material": 25, "details": 10},
    ProductCategory.SUNGLASSES: {"color": 40, "style": 35, "material": 10, "details": 15},
    ProductCategory.EARRINGS: {"color": 30, "style": 55, "material": 10, "details": 5},
}


def budget_totals(category: ProductCategory = ProductCategory.CLOTHING) -> Dict[str, float]:
    """Points per group according to the category's point budget."""
    totals: Dict[str, float] = {}
    for rule in POINT_BUDGETS[category]:
        totals[rule.group] = totals.get(rule.group, 0) + rule.max_points
    return totals


# ==================== Similarity ====================


def _normalize(value: object) -> str:
    return str(value).strip().lower() if value is not None else ""


def families_of(value: str, families: Mapping[str, Tuple[str, ...]]) -> FrozenSet[str]:
    """Every family a value belongs to, matching shades by containment."""
    value = _normalize(value)
    if value in MISSING_VALUES:
        return frozenset()
    return frozenset(
        name
        for name, members in families.items()
        if value == name or any(m in value or value in m for m in members)
    )


def family_similarity(
    reference: str, candidate: str, families: Mapping[str, Tuple[str, ...]]
) -> Tuple[float, str]:
    """Exact 1.0, shade containment 0.9, shared family 0.7, otherwise 0."""
    ref, cand = _normalize(reference), _normalize(candidate)
    # Equal values match even when both sides are unknown
    if ref == cand:
        return EXACT_SIMILARITY, "Exact match"
    if ref in MISSING_VALUES or cand in MISSING_VALUES:
        return 0.0, "Not visible in one of the images"
    if ref in cand or cand in ref:
        return SHADE_SIMILARITY, "Shade variation (90%)"

    shared = families_of(ref, families) & families_of(cand, families)
    if shared:
        return FAMILY_SIMILARITY, f"Same family: {sorted(shared)[0]} (70%)"
    return 0.0, "Different families"


def canonical(value: str, variants: Optional[Mapping[str, Tuple[str, ...]]] = None) -> str:
    value = _normalize(value)
    if variants:
        for name, spellings in variants.items():
            if value == name or value in spellings:
                return name
    return value


def exact_similarity(
    reference: str,
    candidate: str,
    variants: Optional[Mapping[str, Tuple[str, ...]]] = None,
) -> Tuple[float, str]:
    """Case-insensitive equality after folding known spelling variants."""
    ref, cand = canonical(reference, variants), canonical(candidate, variants)
    if ref == cand:
        return EXACT_SIMILARITY, "Match"
    if ref in MISSING_VALUES or cand in MISSING_VALUES:
        return 0.0, "Not visible in one of the images"
    return 0.0, f"{ref} vs {cand}"


def confidence_weight(reference_confidence: float, candidate_confidence: float) -> float:
    mean = (reference_confidence + candidate_confidence) / 2
    return min(max(mean, MIN_WEIGHT), MAX_WEIGHT)


# ==================== Value extraction ====================


def _pattern(value: object) -> str:
    text = _normalize(value)
    return "solid" if text in MISSING_VALUES else text


def _flag(value: object) -> bool:
    return value is True or _normalize(value) == "true"


def _reference_value(profile: ReferenceProfile, rule: AttributeRule) -> Tuple[str, float]:
    if rule.name == "closures":
        buttons, zipper = profile.has_buttons, profile.has_zipper
        value = f"buttons:{_flag(buttons.value)} zipper:{_flag(zipper.value)}"
        return value, (buttons.confidence + zipper.confidence) / 2

    fused: FusedAttribute = getattr(profile, rule.name)
    if rule.name == "pattern_type":
        return _pattern(fused.value), fused.confidence
    if rule.kind == "flag":
        return str(_flag(fused.value)).lower(), fused.confidence
    return _normalize(fused.value) or UNKNOWN, fused.confidence


def _candidate_value(attributes: GarmentAttributes, rule: AttributeRule) -> str:
    if rule.name == "closures":
        return f"buttons:{attributes.has_buttons} zipper:{attributes.has_zipper}"
    if rule.name == "pattern_type":
        return _pattern(attributes.pattern_type)
    if rule.kind == "flag":
        return str(_flag(getattr(attributes, rule.name))).lower()
    return _normalize(getattr(attributes, rule.name)) or UNKNOWN


# ==================== Verification ====================


def verification_for(score: float) -> VerificationState:
    tier = VerificationTier.AUTO_HIGH if score >= AUTO_HIGH_THRESHOLD else VerificationTier.AUTO
    return VerificationState(tier=tier, confidence=score)


def confirm_match(
    ranking: CandidateRanking, tier: VerificationTier, verified_by: str
) -> CandidateRanking:
    """Record a creator or brand confirmation."""
    if tier not in (VerificationTier.CREATOR_CONFIRMED, VerificationTier.BRAND_VERIFIED):
        raise ValueError(f"Cannot confirm a match with tier {tier.value}")
    state = VerificationState(
        tier=tier,
        confidence=min(ranking.total_score + CONFIRMATION_BONUS, 100.0),
        verified_at=datetime.now(timezone.utc),
        verified_by=verified_by,
    )
    return ranking.model_copy(update={"verification": state})


def dispute_match(ranking: CandidateRanking, reason: str, disputed_by: str) -> CandidateRanking:
    state = VerificationState(
        tier=VerificationTier.DISPUTED,
        confidence=ranking.verification.confidence,
        verified_at=datetime.now(timezone.utc),
        verified_by=disputed_by,
        dispute_reason=reason,
    )
    return ranking.model_copy(update={"verification": state})


# ==================== Matcher ====================


class AttributeMatcher:
    """
    Scores candidates against a reference profile.

    The reference's category picks the point budget.

    Args:
        critical_mismatch_cap: If set, a candidate that disagrees with the
            reference on a critical attribute, or is listed under another
            category, can score at most this total.
    """

    def __init__(self, critical_mismatch_cap: Optional[float] = None) -> None:
        self.critical_mismatch_cap = critical_mismatch_cap

    def _similarity(self, rule: AttributeRule, reference: str, candidate: str) -> Tuple[float, str]:
        if rule.kind == "fuzzy":
            return family_similarity(reference, candidate, rule.table or {})

        similarity, reasoning = exact_similarity(reference, candidate, rule.table)
        if similarity >= EXACT_SIMILARITY:
            return similarity, reasoning
        if rule.kind == "partial":
            return TEXTURE_MISMATCH_SIMILARITY, f"Partial credit ({reasoning})"
        if rule.keyword and rule.keyword in reference and rule.keyword in candidate:
            return rule.keyword_similarity, f"Both {rule.keyword} ({reasoning})"
        return similarity, reasoning

    def score(self, reference: ReferenceProfile, candidate: ShoppingCandidate) -> CandidateRanking:
        """Score one candidate. The returned ranking has rank 0 until ranked."""
        attributes = candidate.attributes
        scores: List[AttributeScore] = []
        flags: List[str] = []
        critical_mismatches: List[str] = []

        if candidate.category is not None and candidate.category != reference.category:
            critical_mismatches.append(
                f"Category: {reference.category.value} vs {candidate.category.value}"
            )
            flags.append("Different product category")

        for rule in POINT_BUDGETS[reference.category]:
            ref_value, ref_confidence = _reference_value(reference, rule)
            cand_value = _candidate_value(attributes, rule)
            similarity, reasoning = self._similarity(rule, ref_value, cand_value)
            weight = confidence_weight(ref_confidence, attributes.confidence)

            if rule.critical and similarity < EXACT_SIMILARITY:
                critical_mismatches.append(f"{rule.label}: {ref_value} vs {cand_value}")
                flags.append(f"Similar style but different {rule.label.lower()}")
                reasoning = f"CRITICAL: {reasoning}"

            scores.append(
                AttributeScore(
                    attribute=rule.name,
                    group=rule.group,
                    reference_value=ref_value,
                    candidate_value=cand_value,
                    max_points=rule.max_points,
                    similarity=similarity,
                    weight=weight,
                    score=round(rule.max_points * similarity * weight, 4),
                    reasoning=reasoning,
                    is_critical=rule.critical,
                )
            )

        raw_score = round(sum(s.score for s in scores), 4)
        total = raw_score
        capped_reason = None
        cap = self.critical_mismatch_cap
        if cap is not None and critical_mismatches and raw_score > cap:
            total = float(cap)
            capped_reason = f"Capped at {cap:g}: {', '.join(critical_mismatches)}"

        return CandidateRanking(
            candidate_id=candidate.id,
            title=candidate.title,
            link=candidate.link,
            total_score=total,
            raw_score=raw_score,
            was_capped=capped_reason is not None,
            capped_reason=capped_reason,
            attribute_scores=scores,
            flags=flags,
            verification=verification_for(total),
        )

    def rank(
        self, reference: ReferenceProfile, candidates: Sequence[ShoppingCandidate]
    ) -> List[CandidateRanking]:
        """Score all candidates, highest total first; ties keep input order."""
        scored = [self.score(reference, candidate) for candidate in candidates]
        ordered = sorted(scored, key=lambda r: -r.total_score)
        return [r.model_copy(update={"rank": i + 1}) for i, r in enumerate(ordered)]


# ==================== Reference fusion ====================

FUSED_FIELDS = tuple(name for name in GarmentAttributes.model_fields if name != "confidence")

COMPLETENESS_FIELDS: Mapping[ProductCategory, Tuple[str, ...]] = {
    ProductCategory.CLOTHING: ("primary_color", "neckline", "sleeve_length", "body_length", "knit_type"),
    ProductCategory.FOOTWEAR: ("primary_color", "toe_shape", "heel_height", "closure", "upper_material"),
    ProductCategory.SUNGLASSES: ("primary_color", "frame_shape", "frame_pattern", "lens_color"),
    ProductCategory.EARRINGS: ("metal_color", "earring_type", "size", "shape"),
}


def fuse_frame_extractions(
    extractions: Sequence[FrameExtraction],
    category: ProductCategory = ProductCategory.CLOTHING,
) -> ReferenceProfile:
    """
    Build a reference profile from per-frame extractions.

    For each attribute the most confident frame that actually saw it wins.
    Completeness is the share of the category's key attributes that were
    seen; overall confidence is their mean confidence.
    """
    fused: Dict[str, FusedAttribute] = {}
    for field in FUSED_FIELDS:
        best: Optional[FusedAttribute] = None
        for extraction in extractions:
            value = getattr(extraction.attributes, field)
            if value is None or _normalize(value) in MISSING_VALUES:
                continue
            confidence = extraction.attributes.confidence
            if best is None or confidence > best.confidence:
                best = FusedAttribute(
                    value=value, source_frame=extraction.frame_index, confidence=confidence
                )
        fused[field] = best or FusedAttribute()

    key_fields = COMPLETENESS_FIELDS[category]
    known = [fused[f] for f in key_fields if fused[f].is_known]
    completeness = len(known) / len(key_fields) * 100
    overall = sum(a.confidence for a in known) / len(known) if known else 0.0

    return ReferenceProfile(
        category=category, **fused, completeness=completeness, overall_confidence=overall
    )


# ==================== Visual tiebreaker ====================

TIEBREAKER_SYSTEM_PROMPT = """You compare shopping results to a product from a creator's video.
Image 1 is the reference product, image 2 is candidate A, image 3 is candidate B.
Score each candidate 0-100 for how much it looks like the same item (color, style, overall look).
Be strict. Respond with JSON only:
{"candidateA": {"visualScore": 0, "reasoning": ""}, "candidateB": {"visualScore": 0, "reasoning": ""}, "winner": "A|B"}"""


def needs_tiebreaker(rankings: Sequence[CandidateRanking]) -> bool:
    if len(rankings) < 2:
        return False
    top, runner_up = rankings[0], rankings[1]
    return (
        top.total_score >= TIEBREAKER_MIN_SCORE
        and top.total_score - runner_up.total_score <= TIEBREAKER_MAX_GAP
    )


def _visual_score(entry: object) -> float:
    if isinstance(entry, dict):
        score = entry.get("visualScore")
        if isinstance(score, (int, float)) and not isinstance(score, bool) and score > 0:
            return float(score)
    return 50.0


async def apply_visual_tiebreaker(
    rankings: List[CandidateRanking],
    router: ModelRouter,
    reference_image: bytes,
    candidate_images: Mapping[str, bytes],
    ledger: Optional[CostLedger] = None,
) -> List[CandidateRanking]:
    """
    Let a vision model order the top two when their scores are close.

    Any model error leaves the ranking unchanged.
    """
    if not needs_tiebreaker(rankings):
        return rankings

    first, second = rankings[0], rankings[1]
    image_a = candidate_images.get(first.candidate_id)
    image_b = candidate_images.get(second.candidate_id)
    if not image_a or not image_b:
        logger.info("Skipping visual tiebreaker: candidate images missing")
        return rankings

    try:
        result = await router.execute_vision_task(
            ExtractionTask.VISUAL_TIEBREAKER,
            [reference_image, image_a, image_b],
            TIEBREAKER_SYSTEM_PROMPT,
            f'Candidate A: "{first.title}"\nCandidate B: "{second.title}"',
            ledger=ledger,
        )
    except Exception as e:
        logger.error(f"Visual tiebreaker failed, keeping attribute order: {e}")
        return rankings

    score_a = _visual_score(result.data.get("candidateA"))
    score_b = _visual_score(result.data.get("candidateB"))
    a_wins = result.data.get("winner") == "A" or score_a > score_b

    first = first.model_copy(update={"tiebreaker_used": True, "visual_score": score_a})
    second = second.model_copy(update={"tiebreaker_used": True, "visual_score": score_b})
    if not a_wins:
        first, second = second, first
        logger.info(f"Visual tiebreaker promoted {first.candidate_id} ({score_b} vs {score_a})")

    return [
        first.model_copy(update={"rank": 1}),
        second.model_copy(update={"rank": 2}),
        *rankings[2:],
    ]
