"""Tests for media info extraction via ffprobe."""

import json
import subprocess
from unittest.mock import patch

import pytest

from conftest import requires_ffmpeg
from src.utils.media_info import has_audio_track


def _completed(stdout: dict | str, returncode: int = 0) -> subprocess.CompletedProcess:
    text = stdout if isinstance(stdout, str) else json.dumps(stdout)
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=text, stderr="boom")


class TestMediaInfo:
    """Test ffprobe output parsing (subprocess mocked)."""

    def test_has_audio_track(self):
        with patch("src.utils.media_info.subprocess.run", return_value=_completed({"streams": [{"codec_type": "audio"}]})):
            assert has_audio_track("/tmp/a.mp4") is True

    def test_no_audio_track(self):
        with patch("src.utils.media_info.subprocess.run", return_value=_completed({"streams": []})):
            assert has_audio_track("/tmp/a.mp4") is False

    def test_ffprobe_failure(self):
        with patch("src.utils.media_info.subprocess.run", return_value=_completed("", returncode=1)):
            with pytest.raises(RuntimeError, match="ffprobe failed"):
                has_audio_track("/tmp/a.mp4")

    def test_ffprobe_missing(self):
        """An unreadable file is an error, never a silent track."""
        with patch("src.utils.media_info.subprocess.run", side_effect=FileNotFoundError("ffprobe")):
            with pytest.raises(RuntimeError, match="ffprobe not found"):
                has_audio_track("/tmp/a.mp4")

    def test_unparseable_output(self):
        with patch("src.utils.media_info.subprocess.run", return_value=_completed("not json")):
            with pytest.raises(RuntimeError, match="Failed to parse"):
                has_audio_track("/tmp/a.mp4")


@requires_ffmpeg
class TestMediaInfoWithFFprobe:
    def test_generated_clip(self, tmp_path):
        clip = tmp_path / "tone.mp4"
        subprocess.run(
            [
                "ffmpeg", "-y",
                "-f", "lavfi", "-i", "testsrc=size=160x120:rate=25:duration=2",
                "-c:v", "libx264", "-pix_fmt", "yuv420p",
                str(clip),
            ],
            check=True,
            capture_output=True,
        )

        assert has_audio_track(str(clip)) is False
