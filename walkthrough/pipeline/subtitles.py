"""
Subtitle timing synthesis.

Words are packed greedily into chunks of at most `max_chars` characters;
each chunk is shown for `chunk_seconds`, back to back from t=0. A single
word longer than `max_chars` is split across consecutive chunks.
"""

from .models import SubtitleCue


def chunk_text(text: str, max_chars: int = 40) -> list[str]:
    chunks: list[str] = []
    current = ""

    for word in text.split():
        while len(word) > max_chars:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(word[:max_chars])
            word = word[max_chars:]
        if not word:
            continue

        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_chars:
            current = candidate
        else:
            chunks.append(current)
            current = word

    if current:
        chunks.append(current)
    return chunks


def build_subtitle_cues(
    text: str,
    video_duration: float,
    chunk_seconds: float = 3.0,
    max_chars: int = 40,
) -> list[SubtitleCue]:
    """
    Cue N starts at N·chunk_seconds; start and end are capped at the video
    duration.
    """
    cues = []
    for index, chunk in enumerate(chunk_text(text, max_chars)):
        start = min(index * chunk_seconds, video_duration)
        end = min(start + chunk_seconds, video_duration)
        cues.append(SubtitleCue(start=start, end=end, text=chunk))
    return cues


def format_srt_time(seconds: float) -> str:
    """12.5 → "00:00:12,500"."""
    total_ms = max(0, round(seconds * 1000))
    hours, rest = divmod(total_ms, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    secs, millis = divmod(rest, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def render_srt(cues: list[SubtitleCue]) -> str:
    blocks = [
        f"{i}\n{format_srt_time(cue.start)} --> {format_srt_time(cue.end)}\n{cue.text}\n"
        for i, cue in enumerate(cues, start=1)
    ]
    return "\n".join(blocks)
