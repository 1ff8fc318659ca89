"""ffmpeg filter-graph construction."""

import pytest

from walkthrough.pipeline.filters import (
    build_concat_filter,
    build_crossfade_filter,
    build_logo_filter,
    build_subtitles_filter,
    composed_duration,
    crossfade_offsets,
    escape_filter_path,
)
from walkthrough.pipeline.models import LogoPosition


class TestCrossfade:
    def test_two_clip_offset(self):
        assert crossfade_offsets([5.0, 5.0], 0.5) == [4.5]

    def test_offsets_account_for_previous_fades(self):
        assert crossfade_offsets([5.0, 5.0, 5.0], 0.5) == [4.5, 9.0]
        assert crossfade_offsets([5.0, 10.0, 5.0], 0.5) == [4.5, 14.0]

    def test_composed_duration(self):
        assert composed_duration([5.0, 5.0, 5.0], 0.5) == 14.0
        assert composed_duration([5.0], 0.5) == 5.0
        assert composed_duration([], 0.5) == 0.0

    def test_two_clip_graph(self):
        graph = build_crossfade_filter([5.0, 5.0], 720, 1280)

        assert "[0:v]format=yuv420p,fps=30,scale=720:1280" in graph
        assert "pad=720:1280:(ow-iw)/2:(oh-ih)/2,setsar=1[v1]" in graph
        assert graph.endswith("[v0][v1]xfade=transition=fade:duration=0.5:offset=4.5[outv]")

    def test_three_clip_graph_chains_labels(self):
        graph = build_crossfade_filter([5.0, 5.0, 5.0], 1280, 720)
        fades = graph.split(";")[3:]

        assert fades == [
            "[v0][v1]xfade=transition=fade:duration=0.5:offset=4.5[xf0]",
            "[xf0][v2]xfade=transition=fade:duration=0.5:offset=9[outv]",
        ]

    def test_needs_two_clips(self):
        with pytest.raises(ValueError):
            build_crossfade_filter([5.0], 720, 1280)


class TestConcat:
    def test_concat_graph(self):
        graph = build_concat_filter(3, 720, 720)
        assert graph.count("setsar=1") == 3
        assert graph.endswith("[v0][v1][v2]concat=n=3:v=1:a=0[outv]")

    def test_needs_two_clips(self):
        with pytest.raises(ValueError):
            build_concat_filter(1, 720, 720)


class TestLogo:
    @pytest.mark.parametrize("position, xy", [
        (LogoPosition.TOP_LEFT, "20:20"),
        (LogoPosition.TOP_RIGHT, "W-w-20:20"),
        (LogoPosition.BOTTOM_LEFT, "20:H-h-20"),
        (LogoPosition.BOTTOM_RIGHT, "W-w-20:H-h-20"),
    ])
    def test_positions(self, position, xy):
        graph = build_logo_filter(position)
        assert graph.endswith(f"[0:v][logo]overlay={xy}[outv]")
        assert "scale='min(500,iw)':'min(500,ih)'" in graph

    def test_accepts_plain_string(self):
        assert "overlay=10:10" in build_logo_filter("top-left", padding=10)


class TestSubtitlesFilter:
    def test_escape(self):
        assert escape_filter_path("C:\\tmp\\it's.srt") == "C\\:/tmp/it\\'s.srt"

    def test_style(self):
        graph = build_subtitles_filter("/tmp/x/subs.srt", font="Helvetica", font_size=30)
        assert graph.startswith("subtitles=/tmp/x/subs.srt:force_style='")
        assert "FontName=Helvetica,FontSize=30" in graph
