"""Property-based tests for end-to-end product matching.

Feature: reelshop
Properties: model replies in either key style parse to the same attributes,
frames fuse into one reference, listings that cannot be read are dropped,
close races go to the visual tiebreaker.
"""

import base64
import json
from typing import Any, Dict, Optional

import pytest
from hypothesis import given, settings, strategies as st

from reelshop.models.matching import ProductCategory, ProductMatchRequest
from reelshop.services.model_router import BackendResponse, CostLedger
from reelshop.services.product_matcher import (
    EXTRACTION_PROMPTS,
    ProductMatcher,
    extract_frame_attributes,
    parse_attributes,
)
from reelshop.utils.errors import MatchingError

SWEATER: Dict[str, Any] = {
    "primaryColor": "olive",
    "colorFamily": "green",
    "colorTone": "muted",
    "neckline": "crew",
    "sleeveLength": "long",
    "bodyLength": "regular",
    "fit": "relaxed",
    "knitType": "ribbed",
    "material": "cotton",
    "texture": "ribbed",
    "hasButtons": "true",
    "hasZipper": False,
    "patternType": "solid",
    "confidence": 0.9,
}


def reply(data: Optional[Dict[str, Any]] = None, **changes: Any) -> BackendResponse:
    return BackendResponse(content=json.dumps({**(data or SWEATER), **changes}))


def b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode()


def match_request(frames: int = 2, listings: int = 2, **extra: Any) -> ProductMatchRequest:
    return ProductMatchRequest.model_validate(
        {
            "frames": [b64(f"frame-{i}".encode()) for i in range(frames)],
            "candidates": [
                {"id": f"l{i}", "title": f"Listing {i}", "image": b64(f"listing-{i}".encode())}
                for i in range(listings)
            ],
            **extra,
        }
    )


class TestParseAttributes:
    """
    *For any* attribute reply, camelCase and snake_case keys SHALL parse to the
    same attributes, and a confidence outside (0, 1] SHALL fall back to 0.5.
    """

    @given(
        color=st.sampled_from(["olive", "navy", "black", "not_visible"]),
        neckline=st.sampled_from(["crew", "v-neck", "turtleneck"]),
        buttons=st.sampled_from([True, False, "true", "false", "TRUE"]),
    )
    @settings(max_examples=50)
    def test_key_style_does_not_matter(self, color: str, neckline: str, buttons: Any) -> None:
        camel = parse_attributes({"primaryColor": color, "neckline": neckline, "hasButtons": buttons})
        snake = parse_attributes({"primary_color": color, "neckline": neckline, "has_buttons": buttons})
        assert camel == snake
        assert camel.primary_color == color
        assert camel.has_buttons is (str(buttons).lower() == "true")

    @pytest.mark.parametrize("confidence", [0, -0.2, 1.5, "high", None, True])
    def test_unusable_confidence_falls_back(self, confidence: Any) -> None:
        assert parse_attributes({"confidence": confidence}).confidence == 0.5

    def test_nested_values_are_ignored(self) -> None:
        attributes = parse_attributes({"primaryColor": {"name": "olive"}, "toeShape": "pointed"})
        assert attributes.primary_color == "unknown"
        assert attributes.toe_shape == "pointed"


class TestFrameExtraction:
    @pytest.mark.asyncio
    async def test_failed_frames_are_skipped(self, make_backend, make_router) -> None:
        backend = make_backend([reply(), BackendResponse(content="not json"), reply(confidence=0.7)])
        ledger = CostLedger()

        extractions = await extract_frame_attributes(
            make_router(backend), [b"f0", b"f1", b"f2"], ProductCategory.CLOTHING, ledger
        )

        assert [e.frame_index for e in extractions] == [0, 2]
        assert extractions[1].attributes.confidence == 0.7
        assert {r.task for r in ledger.records} == {"reference_extraction"}
        assert all(call["system_prompt"] == EXTRACTION_PROMPTS[ProductCategory.CLOTHING] for call in backend.calls)

    @pytest.mark.asyncio
    async def test_category_picks_the_prompt(self, make_backend, make_router) -> None:
        backend = make_backend([reply({"toeShape": "pointed", "confidence": 0.8})])
        extractions = await extract_frame_attributes(make_router(backend), [b"f0"], ProductCategory.FOOTWEAR)
        assert extractions[0].attributes.toe_shape == "pointed"
        assert "footwear" in backend.calls[0]["system_prompt"]


class TestProductMatcher:
    @pytest.mark.asyncio
    async def test_frames_fuse_and_listings_are_ranked(self, make_backend, make_router) -> None:
        backend = make_backend(
            [
                reply(neckline="not_visible", confidence=0.6),
                reply(confidence=0.9),
                reply(primaryColor="burgundy"),
                reply(),
            ]
        )
        ledger = CostLedger()

        response = await ProductMatcher(make_router(backend)).match(match_request(), ledger)

        assert response.frames_analyzed == 2
        assert response.reference.neckline.source_frame == 1
        assert response.reference.category == ProductCategory.CLOTHING
        assert [r.candidate_id for r in response.rankings] == ["l1", "l0"]
        assert response.top_match.candidate_id == "l1"
        assert not response.tiebreaker_used
        assert [call["images"] for call in backend.calls] == [1, 1, 1, 1]
        assert response.costs["by_task"].keys() == {"reference_extraction", "candidate_extraction"}
        assert response.costs["calls"] == 4

    @pytest.mark.asyncio
    async def test_unreadable_listing_is_dropped(self, make_backend, make_router) -> None:
        backend = make_backend([reply(), reply(), BackendResponse(content="[]"), reply(fit="oversized")])

        response = await ProductMatcher(make_router(backend)).match(match_request(frames=1, listings=3))

        assert [r.candidate_id for r in response.rankings] == ["l0", "l2"]
        assert [r.rank for r in response.rankings] == [1, 2]

    @pytest.mark.asyncio
    async def test_no_readable_frames_is_an_error(self, make_backend, make_router) -> None:
        backend = make_backend(error=RuntimeError("provider down"))
        with pytest.raises(MatchingError, match="No attributes extracted"):
            await ProductMatcher(make_router(backend)).match(match_request())

    @pytest.mark.asyncio
    async def test_close_race_goes_to_the_tiebreaker(self, make_backend, make_router) -> None:
        verdict = {"candidateA": {"visualScore": 55}, "candidateB": {"visualScore": 92}, "winner": "B"}
        backend = make_backend(
            [reply(), reply(), reply(fit="oversized"), BackendResponse(content=json.dumps(verdict))]
        )
        ledger = CostLedger()

        response = await ProductMatcher(make_router(backend)).match(
            match_request(frames=1, reference_image=b64(b"reference")), ledger
        )

        assert response.tiebreaker_used
        assert response.top_match.candidate_id == "l1"
        assert ledger.records[-1].task == "visual_tiebreaker"
        assert backend.calls[-1]["images"] == 3

    @pytest.mark.asyncio
    async def test_close_race_without_reference_image_keeps_attribute_order(self, make_backend, make_router) -> None:
        backend = make_backend([reply(), reply(), reply(fit="oversized")])

        response = await ProductMatcher(make_router(backend)).match(match_request(frames=1))

        assert response.top_match.candidate_id == "l0"
        assert len(backend.calls) == 3

    @pytest.mark.asyncio
    async def test_category_budget_is_used(self, make_backend, make_router) -> None:
        hoops = {"metalColor": "gold", "earringType": "hoop", "size": "small", "shape": "round", "confidence": 1.0}
        backend = make_backend([reply(hoops), reply(hoops, metalColor="silver"), reply(hoops)])

        response = await ProductMatcher(make_router(backend)).match(
            match_request(frames=1, category="earrings", critical_mismatch_cap=50)
        )

        assert response.category == ProductCategory.EARRINGS
        assert [r.candidate_id for r in response.rankings] == ["l1", "l0"]
        assert response.rankings[1].was_capped
        assert "Metal Color" in response.rankings[1].capped_reason
