"""
Room category metadata and grouping.

Room groups are a derived view over classified images: they are rebuilt
every time classification results change and never persisted. Images carry
the category; groups only decide labels, colors and walkthrough order.
"""

import logging
from typing import NamedTuple, Optional

from .models import (
    ImageRecord,
    ImageStatus,
    ProcessingStats,
    RoomCategory,
    RoomGroup,
)

logger = logging.getLogger(__name__)


class CategoryMeta(NamedTuple):
    label: str
    order: int
    color: str
    allow_numbering: bool
    group: str


# Ordered for a front-door-to-basement walkthrough
ROOM_CATEGORIES: dict[str, CategoryMeta] = {
    RoomCategory.EXTERIOR_FRONT.value: CategoryMeta("Exterior - Front", 1, "#10b981", False, "exterior"),
    RoomCategory.EXTERIOR_BACKYARD.value: CategoryMeta("Exterior - Backyard", 2, "#059669", False, "exterior"),
    RoomCategory.LIVING_ROOM.value: CategoryMeta("Living Room", 3, "#3b82f6", False, "living"),
    RoomCategory.DINING_ROOM.value: CategoryMeta("Dining Room", 4, "#8b5cf6", False, "living"),
    RoomCategory.KITCHEN.value: CategoryMeta("Kitchen", 5, "#f59e0b", False, "living"),
    RoomCategory.BEDROOM.value: CategoryMeta("Bedroom", 6, "#ec4899", True, "private"),
    RoomCategory.BATHROOM.value: CategoryMeta("Bathroom", 7, "#06b6d4", True, "private"),
    RoomCategory.OFFICE.value: CategoryMeta("Office/Study", 8, "#14b8a6", False, "private"),
    RoomCategory.LAUNDRY_ROOM.value: CategoryMeta("Laundry Room", 9, "#a855f7", False, "utility"),
    RoomCategory.GARAGE.value: CategoryMeta("Garage", 10, "#6366f1", False, "utility"),
    RoomCategory.BASEMENT.value: CategoryMeta("Basement", 11, "#64748b", False, "utility"),
    RoomCategory.OTHER.value: CategoryMeta("Other", 12, "#94a3b8", False, "other"),
}

ERRORS_GROUP = "errors"
ERRORS_META = CategoryMeta("Errors", 99, "#ef4444", False, "other")

LOW_CONFIDENCE_THRESHOLD = 0.5


def categorize_images(images: list[ImageRecord]) -> dict[str, list[ImageRecord]]:
    """
    Bucket images by category.

    Failed images go to "errors" and unclassified ones to "other";
    nothing is dropped.
    """
    categorized: dict[str, list[ImageRecord]] = {}

    for image in images:
        if image.classification:
            key = image.classification.category.value
        elif image.status == ImageStatus.ERROR:
            key = ERRORS_GROUP
        else:
            key = RoomCategory.OTHER.value
        categorized.setdefault(key, []).append(image)

    return categorized


def build_room_groups(
    images: list[ImageRecord],
    low_confidence_threshold: float = LOW_CONFIDENCE_THRESHOLD,
) -> list[RoomGroup]:
    """
    Organize images into display groups sorted by walkthrough order.

    - Classifications below the threshold are moved to "other".
    - Numbered categories (bedroom, bathroom) with more than one image get
      one group per image: "Bedroom 1", "Bedroom 2", ...
    """
    buckets: dict[str, list[ImageRecord]] = {}

    for image in images:
        if image.classification:
            category = image.classification.category.value
            if (
                image.classification.confidence < low_confidence_threshold
                and category != RoomCategory.OTHER.value
            ):
                category = RoomCategory.OTHER.value
        elif image.status == ImageStatus.ERROR:
            category = ERRORS_GROUP
        else:
            category = RoomCategory.OTHER.value
        buckets.setdefault(category, []).append(image)

    groups: list[RoomGroup] = []
    for category, bucket in buckets.items():
        meta = ROOM_CATEGORIES.get(category, ERRORS_META)
        ordered = sorted(bucket, key=lambda img: img.order)

        if meta.allow_numbering and len(ordered) > 1:
            for index, image in enumerate(ordered, start=1):
                groups.append(RoomGroup(
                    category=category,
                    display_label=f"{meta.label} {index}",
                    base_label=meta.label,
                    room_number=index,
                    color=meta.color,
                    avg_confidence=_confidence(image),
                    images=[image],
                ))
        else:
            groups.append(RoomGroup(
                category=category,
                display_label=meta.label,
                base_label=meta.label,
                color=meta.color,
                avg_confidence=sum(_confidence(img) for img in ordered) / len(ordered),
                images=ordered,
            ))

    groups.sort(key=lambda g: (
        ROOM_CATEGORIES.get(g.category, ERRORS_META).order,
        g.room_number or 0,
    ))
    return groups


def _confidence(image: ImageRecord) -> float:
    return image.classification.confidence if image.classification else 0.0


def group_key(group: RoomGroup) -> str:
    """Stable room id for a group, e.g. "kitchen" or "bedroom-2"."""
    if group.room_number:
        return f"{group.category}-{group.room_number}"
    return group.category


def calculate_stats(images: list[ImageRecord], duration_ms: float) -> ProcessingStats:
    uploaded = sum(1 for img in images if img.upload_url)
    classified = [img for img in images if img.classification]
    failed = sum(1 for img in images if img.status == ImageStatus.ERROR)

    avg_confidence = (
        sum(img.classification.confidence for img in classified) / len(classified)
        if classified else 0.0
    )

    return ProcessingStats(
        total=len(images),
        uploaded=uploaded,
        analyzed=len(classified),
        failed=failed,
        success_rate=(len(classified) / len(images) * 100) if images else 0.0,
        avg_confidence=avg_confidence,
        total_duration_ms=duration_ms,
    )


def category_label(category: Optional[str]) -> str:
    meta = ROOM_CATEGORIES.get(category or "")
    return meta.label if meta else (category or "Other")
