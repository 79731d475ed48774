"""
Tests for review statistics, analytics and quality flags.
"""

import pytest

from aves.analytics.aggregator import compute_quality_flags, get_review_analytics, get_review_stats


class TestComputeQualityFlags:

    @pytest.mark.parametrize(
        "box,confidence,too_small,low_confidence",
        [
            ({"x": 0.1, "y": 0.1, "width": 0.1, "height": 0.1}, 0.9, True, False),
            ({"x": 0.1, "y": 0.1, "width": 0.5, "height": 0.5}, 0.5, False, True),
            ({"x": 0.1, "y": 0.1, "width": 0.1, "height": 0.1}, 0.5, True, True),
            ({"x": 0.1, "y": 0.1, "width": 0.2, "height": 0.2}, 0.7, False, False),
        ],
    )
    def test_flags_independent(self, box, confidence, too_small, low_confidence):
        flags = compute_quality_flags(box, confidence)
        assert flags == {"too_small": too_small, "low_confidence": low_confidence}

    def test_area_threshold_boundary(self):
        # exactly 2% of the image is not too small
        assert not compute_quality_flags({"x": 0, "y": 0, "width": 0.2, "height": 0.1}, 0.9)["too_small"]
        assert compute_quality_flags({"x": 0, "y": 0, "width": 0.2, "height": 0.0999}, 0.9)["too_small"]

    def test_legacy_box(self):
        legacy = {"topLeft": {"x": 0.1, "y": 0.1}, "bottomRight": {"x": 0.15, "y": 0.15}}
        assert compute_quality_flags(legacy, 0.95)["too_small"]

    def test_unreadable_box_not_flagged(self):
        assert compute_quality_flags({"bogus": 1}, 0.95) == {"too_small": False, "low_confidence": False}


class TestReviewStats:

    async def test_empty(self, session_factory):
        async with session_factory() as session:
            stats = await get_review_stats(session)
        assert stats["total"] == 0
        assert stats["avg_confidence"] == 0.0
        assert stats["recent_activity"] == []

    async def test_counts_and_activity(self, workflow, make_job, session_factory):
        _, [first, second, _] = await make_job()
        await workflow.approve(first, "rev-1")
        await workflow.reject(second, "rev-2", category="TOO_SMALL")

        async with session_factory() as session:
            stats = await get_review_stats(session)
        assert (stats["total"], stats["pending"], stats["approved"], stats["rejected"], stats["edited"]) == (3, 1, 1, 1, 0)
        assert stats["avg_confidence"] == pytest.approx((0.9 + 0.6 + 0.85) / 3, abs=1e-3)
        assert {a["action"] for a in stats["recent_activity"]} == {"approve", "reject"}


class TestReviewAnalytics:

    async def test_breakdowns(self, workflow, make_job, session_factory):
        _, items = await make_job("img-1", species="Pica pica")
        await make_job("img-2", species=None)

        await workflow.reject(items[0], "rev", category="TOO_SMALL", notes="tiny")
        await workflow.reject(items[1], "rev", reason="not a bird part")

        async with session_factory() as session:
            analytics = await get_review_analytics(session)

        assert analytics["by_species"] == {"Pica pica": 3, "unknown": 3}
        assert analytics["by_type"] == {"anatomical": 6}
        assert analytics["rejections_by_category"] == {"TOO_SMALL": 1}
        assert analytics["uncategorized_rejections"] == 1
        assert analytics["overview"]["rejected"] == 2
        # pending: la cola (img-1) plus all three of img-2; only la pata boxes are tiny
        assert analytics["quality_flags"] == {"too_small": 1, "low_confidence": 1}
