"""
Tests for bounding box shape normalization.
"""

import pytest
from pydantic import ValidationError

from aves.schemas.annotations import AnnotationOverrides
from aves.schemas.bounding_box import (
    BoundingBox,
    boxes_equal,
    normalize_bounding_box,
    to_legacy_shape,
)


class TestNormalizeBoundingBox:

    def test_flat_shape(self):
        box = normalize_bounding_box({"x": 0.1, "y": 0.2, "width": 0.3, "height": 0.4})
        assert box == BoundingBox(x=0.1, y=0.2, width=0.3, height=0.4)

    def test_legacy_shape(self):
        box = normalize_bounding_box({
            "topLeft": {"x": 0.1, "y": 0.2},
            "bottomRight": {"x": 0.4, "y": 0.6},
            "width": 0.3,
            "height": 0.4,
        })
        assert box.x == pytest.approx(0.1)
        assert box.y == pytest.approx(0.2)
        assert box.width == pytest.approx(0.3)
        assert box.height == pytest.approx(0.4)

    def test_legacy_without_size(self):
        box = normalize_bounding_box({"topLeft": {"x": 0.0, "y": 0.0}, "bottomRight": {"x": 0.5, "y": 0.25}})
        assert box.area == pytest.approx(0.125)

    def test_instance_passthrough(self):
        box = BoundingBox(x=0.1, y=0.1, width=0.1, height=0.1)
        assert normalize_bounding_box(box) is box

    def test_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            normalize_bounding_box({"x": 1.2, "y": 0.2, "width": 0.3, "height": 0.4})

    def test_box_past_right_edge_rejected(self):
        with pytest.raises(ValueError):
            normalize_bounding_box({"x": 0.9, "y": 0.1, "width": 0.2, "height": 0.1})

    def test_box_past_bottom_edge_rejected(self):
        with pytest.raises(ValueError):
            BoundingBox(x=0.1, y=0.9, width=0.1, height=0.8)

    def test_box_touching_edge_allowed(self):
        box = BoundingBox(x=0.7, y=0.6, width=0.3, height=0.4)
        assert box.area == pytest.approx(0.12)

    def test_inverted_corners_rejected(self):
        with pytest.raises(ValueError):
            normalize_bounding_box({"topLeft": {"x": 0.5, "y": 0.5}, "bottomRight": {"x": 0.1, "y": 0.1}})

    def test_unsupported_type(self):
        with pytest.raises(ValueError):
            normalize_bounding_box([0.1, 0.2, 0.3, 0.4])


class TestLegacyShape:

    def test_to_legacy_and_back(self):
        box = BoundingBox(x=0.2, y=0.3, width=0.4, height=0.1)
        legacy = to_legacy_shape(box)
        assert legacy["topLeft"] == {"x": 0.2, "y": 0.3}
        assert legacy["bottomRight"]["x"] == pytest.approx(0.6)
        assert legacy["bottomRight"]["y"] == pytest.approx(0.4)
        assert boxes_equal(normalize_bounding_box(legacy), box)

    def test_edge_box_reads_back_from_legacy(self):
        box = BoundingBox(x=0.7, y=0.8, width=0.3, height=0.2)
        assert boxes_equal(normalize_bounding_box(to_legacy_shape(box)), box)

    def test_center(self):
        box = BoundingBox(x=0.2, y=0.2, width=0.2, height=0.4)
        assert box.center == pytest.approx((0.3, 0.4))


class TestAnnotationOverrides:

    def test_legacy_box_in_overrides(self):
        overrides = AnnotationOverrides.model_validate({
            "boundingBox": {"topLeft": {"x": 0.1, "y": 0.1}, "bottomRight": {"x": 0.3, "y": 0.2}},
        })
        updates = overrides.field_updates()
        assert set(updates) == {"bounding_box"}
        assert updates["bounding_box"]["width"] == pytest.approx(0.2)

    def test_only_supplied_fields(self):
        overrides = AnnotationOverrides.model_validate({"spanishTerm": "el ala", "type": "color"})
        assert overrides.field_updates() == {"spanish_term": "el ala", "annotation_type": "color"}

    def test_empty_overrides(self):
        assert AnnotationOverrides().field_updates() == {}

    def test_invalid_difficulty(self):
        with pytest.raises(ValidationError):
            AnnotationOverrides.model_validate({"difficultyLevel": 9})
