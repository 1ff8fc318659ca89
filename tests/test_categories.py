"""Room groups, category metadata and processing statistics."""

from walkthrough.pipeline.categories import (
    ROOM_CATEGORIES,
    build_room_groups,
    calculate_stats,
    categorize_images,
    category_label,
    group_key,
)
from walkthrough.pipeline.models import ImageRecord, ImageStatus, RoomClassification, RoomCategory


def _image(image_id, category=None, confidence=0.9, status=ImageStatus.ANALYZED, order=0):
    classification = RoomClassification(category=category, confidence=confidence) if category else None
    return ImageRecord(
        id=image_id,
        upload_url=f"https://cdn.test/{image_id}.jpg",
        classification=classification,
        status=status,
        order=order,
    )


class TestCategorizeImages:
    def test_nothing_is_dropped(self):
        images = [
            _image("a", "kitchen"),
            _image("b", status=ImageStatus.ERROR),
            _image("c", status=ImageStatus.UPLOADED),
        ]
        buckets = categorize_images(images)

        assert [img.id for img in buckets["kitchen"]] == ["a"]
        assert [img.id for img in buckets["errors"]] == ["b"]
        assert [img.id for img in buckets["other"]] == ["c"]


class TestBuildRoomGroups:
    def test_sorted_by_walkthrough_order(self):
        images = [
            _image("k", "kitchen"),
            _image("f", "exterior-front"),
            _image("g", "garage"),
            _image("l", "living-room"),
        ]
        groups = build_room_groups(images)
        assert [g.category for g in groups] == ["exterior-front", "living-room", "kitchen", "garage"]

    def test_low_confidence_moves_to_other(self):
        groups = build_room_groups([_image("a", "kitchen", confidence=0.3)])
        assert [g.category for g in groups] == ["other"]

    def test_numbered_categories_split_per_image(self):
        images = [
            _image("b2", "bedroom", order=2),
            _image("b1", "bedroom", order=1),
            _image("k", "kitchen"),
        ]
        groups = build_room_groups(images)

        labels = [g.display_label for g in groups]
        assert labels == ["Kitchen", "Bedroom 1", "Bedroom 2"]
        assert groups[1].images[0].id == "b1"
        assert group_key(groups[2]) == "bedroom-2"
        assert group_key(groups[0]) == "kitchen"

    def test_single_bedroom_is_not_numbered(self):
        groups = build_room_groups([_image("b", "bedroom")])
        assert groups[0].display_label == "Bedroom"
        assert groups[0].room_number is None

    def test_group_carries_color_and_average(self):
        groups = build_room_groups([
            _image("a", "kitchen", confidence=0.8),
            _image("b", "kitchen", confidence=0.6),
        ])
        assert groups[0].color == ROOM_CATEGORIES["kitchen"].color
        assert round(groups[0].avg_confidence, 2) == 0.7

    def test_errors_group_last(self):
        groups = build_room_groups([
            _image("x", status=ImageStatus.ERROR),
            _image("o", "other"),
        ])
        assert [g.category for g in groups] == ["other", "errors"]


class TestStats:
    def test_calculate_stats(self):
        images = [
            _image("a", "kitchen", confidence=0.8),
            _image("b", "bathroom", confidence=0.6),
            _image("c", status=ImageStatus.ERROR),
        ]
        stats = calculate_stats(images, 1234.0)

        assert stats.total == 3
        assert stats.uploaded == 3
        assert stats.analyzed == 2
        assert stats.failed == 1
        assert round(stats.success_rate, 1) == 66.7
        assert round(stats.avg_confidence, 2) == 0.7
        assert stats.total_duration_ms == 1234.0

    def test_empty(self):
        stats = calculate_stats([], 0)
        assert stats.success_rate == 0
        assert stats.avg_confidence == 0


def test_every_category_has_metadata():
    assert set(ROOM_CATEGORIES) == {c.value for c in RoomCategory}
    assert category_label("laundry-room") == "Laundry Room"
    assert category_label("unknown") == "unknown"
