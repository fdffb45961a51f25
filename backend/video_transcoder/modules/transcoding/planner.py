"""Rendition planning.

Maps a source resolution to the renditions worth producing: every tier of
the ladder up to the highest one the source qualifies for. Sources smaller
than the lowest tier still get the lowest tier, so a plan is never empty.
"""

from video_transcoder.modules.transcoding.models import (
    Rendition,
    RENDITION_LADDER,
    RENDITION_THRESHOLDS,
)


def classify_resolution(width: int, height: int) -> Rendition:
    """Get the highest tier whose width and height thresholds the source meets.

    Args:
        width: Source width in pixels
        height: Source height in pixels

    Returns:
        Classified rendition, the lowest tier when no threshold is met

    Raises:
        ValueError: If either dimension is not positive
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"source dimensions must be positive, got {width}x{height}")

    for rendition in reversed(RENDITION_LADDER):
        min_width, min_height = RENDITION_THRESHOLDS[rendition]
        if width >= min_width and height >= min_height:
            return rendition

    return RENDITION_LADDER[0]


def plan_renditions(width: int, height: int) -> list[Rendition]:
    """Get the ordered renditions to produce for a source.

    Intermediate tiers are never skipped, so a source sitting between two
    thresholds may be upscaled slightly for the lower tiers.

    Args:
        width: Source width in pixels
        height: Source height in pixels

    Returns:
        Renditions in ascending quality order, ending at the classified tier
    """
    ceiling = classify_resolution(width, height)
    return list(RENDITION_LADDER[: ceiling.rank + 1])
