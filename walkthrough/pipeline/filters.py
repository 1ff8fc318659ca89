"""
ffmpeg filter-graph builders for the composition engine.

Pure string construction, no I/O. Every multi-input graph ends in the
`[outv]` label, which the caller maps with `-map "[outv]"`.
"""

from .models import LogoPosition

OUTPUT_LABEL = "outv"

# overlay x:y expressions; W/H = main video size, w/h = logo size
LOGO_POSITIONS = {
    LogoPosition.TOP_LEFT: "{p}:{p}",
    LogoPosition.TOP_RIGHT: "W-w-{p}:{p}",
    LogoPosition.BOTTOM_LEFT: "{p}:H-h-{p}",
    LogoPosition.BOTTOM_RIGHT: "W-w-{p}:H-h-{p}",
}


def _num(value: float) -> str:
    """Compact decimal: 4.5 → "4.5", 9.0 → "9"."""
    return f"{value:.3f}".rstrip("0").rstrip(".")


def crossfade_offsets(durations: list[float], fade: float) -> list[float]:
    """
    Start time of each pairwise fade in the combined timeline.

    offset_i = (d_0 + ... + d_i) − i·fade − fade

    Each fade shortens the running timeline by `fade`, so later offsets are
    shifted back by the fades already applied.
    """
    offsets = []
    cumulative = 0.0
    for i, duration in enumerate(durations[:-1]):
        cumulative += duration
        offsets.append(cumulative - i * fade - fade)
    return offsets


def composed_duration(durations: list[float], fade: float) -> float:
    """Expected length of a crossfaded sequence."""
    if not durations:
        return 0.0
    return sum(durations) - fade * (len(durations) - 1)


def normalize_stream(index: int, width: int, height: int, fps: int) -> str:
    """Bring input `index` to one pixel format, frame rate and canvas size."""
    return (
        f"[{index}:v]format=yuv420p,fps={fps},"
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,setsar=1[v{index}]"
    )


def build_crossfade_filter(
    durations: list[float],
    width: int,
    height: int,
    fps: int = 30,
    fade: float = 0.5,
) -> str:
    """
    Normalize every input then chain xfade between neighbours.

    Args:
        durations: Measured length of each input clip, in order.
    """
    if len(durations) < 2:
        raise ValueError("crossfade needs at least two clips")

    parts = [normalize_stream(i, width, height, fps) for i in range(len(durations))]
    offsets = crossfade_offsets(durations, fade)

    previous = "v0"
    for i, offset in enumerate(offsets):
        label = OUTPUT_LABEL if i == len(offsets) - 1 else f"xf{i}"
        parts.append(
            f"[{previous}][v{i + 1}]xfade=transition=fade:"
            f"duration={_num(fade)}:offset={_num(offset)}[{label}]"
        )
        previous = label

    return ";".join(parts)


def build_concat_filter(count: int, width: int, height: int, fps: int = 30) -> str:
    """Frame-accurate hard-cut concatenation of `count` normalized inputs."""
    if count < 2:
        raise ValueError("concat needs at least two clips")

    parts = [normalize_stream(i, width, height, fps) for i in range(count)]
    inputs = "".join(f"[v{i}]" for i in range(count))
    parts.append(f"{inputs}concat=n={count}:v=1:a=0[{OUTPUT_LABEL}]")
    return ";".join(parts)


def build_logo_filter(position: LogoPosition, max_size: int = 500, padding: int = 20) -> str:
    """Scale input 1 into a max_size box and overlay it on input 0."""
    xy = LOGO_POSITIONS[LogoPosition(position)].format(p=padding)
    return (
        f"[1:v]scale='min({max_size},iw)':'min({max_size},ih)':"
        f"force_original_aspect_ratio=decrease[logo];"
        f"[0:v][logo]overlay={xy}[{OUTPUT_LABEL}]"
    )


def escape_filter_path(path: str) -> str:
    """Make a filesystem path safe inside a filter argument."""
    return path.replace("\\", "/").replace(":", "\\:").replace("'", "\\'")


def build_subtitles_filter(srt_path: str, font: str = "Arial", font_size: int = 24) -> str:
    style = (
        f"FontName={font},FontSize={font_size},"
        f"PrimaryColour=&HFFFFFF,OutlineColour=&H000000,Outline=2"
    )
    return f"subtitles={escape_filter_path(srt_path)}:force_style='{style}'"
