"""Property-based tests for rendition planning.

For any positive source resolution the plan is non-empty, ascending,
duplicate-free, ends at the classified tier and never skips a tier.
"""

import pytest
from hypothesis import given, settings, strategies as st

from video_transcoder.modules.transcoding.models import (
    RENDITION_DIMENSIONS,
    RENDITION_LADDER,
    RENDITION_THRESHOLDS,
    Rendition,
)
from video_transcoder.modules.transcoding.planner import classify_resolution, plan_renditions


dimension_strategy = st.integers(min_value=1, max_value=8192)
rendition_strategy = st.sampled_from(list(Rendition))


class TestClassifyResolution:
    """Tests for source resolution classification."""

    @pytest.mark.parametrize(
        "width,height,expected",
        [
            (1920, 1080, Rendition.RES_1080P),
            (3840, 2160, Rendition.RES_1080P),
            (1280, 720, Rendition.RES_720P),
            (1919, 1080, Rendition.RES_720P),
            (854, 480, Rendition.RES_480P),
            (852, 480, Rendition.RES_360P),
            (640, 360, Rendition.RES_360P),
            (426, 240, Rendition.RES_240P),
            (100, 100, Rendition.RES_240P),
            (1, 1, Rendition.RES_240P),
        ],
    )
    def test_known_resolutions(self, width: int, height: int, expected: Rendition) -> None:
        assert classify_resolution(width, height) == expected

    def test_portrait_source_needs_both_thresholds(self) -> None:
        # 1080x1920 meets the 1080p height but not its width
        assert classify_resolution(1080, 1920) == Rendition.RES_480P

    @pytest.mark.parametrize("width,height", [(0, 1080), (1920, 0), (-1, 720), (0, 0)])
    def test_non_positive_dimensions_rejected(self, width: int, height: int) -> None:
        with pytest.raises(ValueError):
            classify_resolution(width, height)

    @given(width=dimension_strategy, height=dimension_strategy)
    @settings(max_examples=200)
    def test_classified_tier_thresholds_are_met(self, width: int, height: int) -> None:
        """The classified tier's thresholds are met unless it is the lowest tier."""
        tier = classify_resolution(width, height)
        min_width, min_height = RENDITION_THRESHOLDS[tier]

        if tier != RENDITION_LADDER[0]:
            assert width >= min_width and height >= min_height

    @given(width=dimension_strategy, height=dimension_strategy)
    @settings(max_examples=200)
    def test_no_higher_tier_qualifies(self, width: int, height: int) -> None:
        tier = classify_resolution(width, height)

        for higher in RENDITION_LADDER[tier.rank + 1:]:
            min_width, min_height = RENDITION_THRESHOLDS[higher]
            assert not (width >= min_width and height >= min_height)


class TestPlanRenditions:
    """Property tests for the rendition plan."""

    @given(width=dimension_strategy, height=dimension_strategy)
    @settings(max_examples=200)
    def test_plan_is_non_empty_prefix_of_ladder(self, width: int, height: int) -> None:
        plan = plan_renditions(width, height)

        assert plan, "Plan must never be empty"
        assert plan == list(RENDITION_LADDER[: len(plan)]), "Plan must not skip tiers"
        assert len(set(plan)) == len(plan), "Plan must not repeat tiers"

    @given(width=dimension_strategy, height=dimension_strategy)
    @settings(max_examples=200)
    def test_plan_is_ascending_and_ends_at_classification(self, width: int, height: int) -> None:
        plan = plan_renditions(width, height)

        ranks = [rendition.rank for rendition in plan]
        assert ranks == sorted(ranks)
        assert plan[-1] == classify_resolution(width, height)

    @given(width=dimension_strategy, height=dimension_strategy)
    @settings(max_examples=100)
    def test_plan_is_deterministic(self, width: int, height: int) -> None:
        assert plan_renditions(width, height) == plan_renditions(width, height)

    def test_full_hd_source_gets_full_ladder(self) -> None:
        assert [r.value for r in plan_renditions(1920, 1080)] == [
            "240p", "360p", "480p", "720p", "1080p",
        ]

    def test_hd_source_stops_at_720p(self) -> None:
        assert [r.value for r in plan_renditions(1280, 720)] == ["240p", "360p", "480p", "720p"]

    def test_tiny_source_gets_lowest_tier(self) -> None:
        assert plan_renditions(100, 100) == [Rendition.RES_240P]


class TestRenditionDimensions:
    """Tests for rendition scale targets."""

    @given(rendition=rendition_strategy)
    @settings(max_examples=50)
    def test_dimensions_are_even_and_landscape(self, rendition: Rendition) -> None:
        width, height = rendition.dimensions

        assert width % 2 == 0 and height % 2 == 0
        assert width > height

    def test_all_renditions_have_dimensions_and_thresholds(self) -> None:
        for rendition in Rendition:
            assert rendition in RENDITION_DIMENSIONS
            assert rendition in RENDITION_THRESHOLDS

    def test_480p_scales_to_852_but_classifies_at_854(self) -> None:
        assert Rendition.RES_480P.dimensions == (852, 480)
        assert Rendition.RES_480P.threshold == (854, 480)

    def test_ladder_is_ascending(self) -> None:
        widths = [rendition.dimensions[0] for rendition in RENDITION_LADDER]
        assert widths == sorted(widths)
