"""Media file information utilities using FFprobe."""

import json
import subprocess


def _run_ffprobe(ffprobe_path: str, file_path: str, *args: str) -> dict:
    """Run ffprobe and return parsed JSON."""
    cmd = [
        ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        *args,
        file_path,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except FileNotFoundError as e:
        raise RuntimeError(f"ffprobe not found at {ffprobe_path}") from e
    if result.returncode != 0:
        raise RuntimeError(f"ffprobe failed: {result.stderr}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"Failed to parse ffprobe output: {e}")


def has_audio_track(file_path: str, ffprobe_path: str = "ffprobe") -> bool:
    """
    Check if media file has an audio track.

    Raises:
        RuntimeError: If ffprobe fails or its output cannot be read
    """
    data = _run_ffprobe(ffprobe_path, file_path, "-show_streams", "-select_streams", "a")
    return len(data.get("streams", [])) > 0
