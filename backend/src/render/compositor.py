"""
Media compositor: render plan -> one encoded video via ffmpeg.

Every kept section is trimmed out of the source tracks, retimed by its playback
speed, laid out on a fixed canvas and then all sections are concatenated in
order. Optional subtitles are burned into the concatenated stream.

Layout per section:
- focused participant (with more than one input): that participant's track only
- 1 input: the track, scaled to the canvas
- 2 inputs: side by side
- 3+ inputs: grid of ceil(sqrt(n)) columns

Audio of all visible tracks is mixed. Inputs without an audio stream get a
silent track so the concat filter always sees one audio pad per section.
"""

import logging
import math
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from src.exceptions import CompositionError
from src.render.render_plan import kept_sections, output_duration
from src.schemas.export import ExportSettings, VideoSection

logger = logging.getLogger(__name__)

CANVAS_SIZES: dict[str, tuple[int, int]] = {
    "720p": (1280, 720),
    "1080p": (1920, 1080),
    "4k": (3840, 2160),
}

VIDEO_BITRATES: dict[str, str] = {
    "4k": "8000k",
    "1080p": "2000k",
    "720p": "1000k",
}
DEFAULT_VIDEO_BITRATE = "1000k"

# atempo accepts factors in [0.5, 2.0]; larger changes are chained
ATEMPO_MIN = 0.5
ATEMPO_MAX = 2.0

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class MediaInput:
    """A downloaded source recording."""

    path: str
    participant_id: str
    has_audio: bool = True


def video_bitrate_for(quality: str) -> str:
    return VIDEO_BITRATES.get(quality, DEFAULT_VIDEO_BITRATE)


def atempo_chain(speed: float) -> list[str]:
    """Split a speed factor into atempo filters each within [0.5, 2.0]."""
    if speed <= 0:
        raise ValueError(f"Playback speed must be positive, got {speed}")
    factors = []
    remaining = speed
    while remaining > ATEMPO_MAX:
        factors.append(ATEMPO_MAX)
        remaining /= ATEMPO_MAX
    while remaining < ATEMPO_MIN:
        factors.append(ATEMPO_MIN)
        remaining /= ATEMPO_MIN
    if abs(remaining - 1.0) > 1e-9:
        factors.append(remaining)
    return [f"atempo={_num(f)}" for f in factors]


def grid_dimensions(count: int) -> tuple[int, int]:
    """(columns, rows) for a grid holding ``count`` tiles."""
    cols = math.ceil(math.sqrt(count))
    rows = math.ceil(count / cols)
    return cols, rows


def escape_filter_path(path: str) -> str:
    """Escape a file path for use as a quoted filter option value."""
    return path.replace("\\", "/").replace(":", "\\:").replace("'", "\\'")


def _num(value: float) -> str:
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return text or "0"


def _even(value: int) -> int:
    return value - value % 2


class MediaCompositor:
    """Builds and runs the ffmpeg command for an export."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        threads: int = 2,
        audio_bitrate: str = "128k",
        audio_sample_rate: int = 48000,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.threads = threads
        self.audio_bitrate = audio_bitrate
        self.audio_sample_rate = audio_sample_rate

    # ------------------------------------------------------------------
    # Filter graph
    # ------------------------------------------------------------------

    def _resolve_tracks(self, section: VideoSection, inputs: Sequence[MediaInput]) -> list[int]:
        """Input indices shown in a section."""
        if section.focused_participant_id and len(inputs) > 1:
            for idx, media in enumerate(inputs):
                if media.participant_id == section.focused_participant_id:
                    return [idx]
            logger.warning(
                f"[COMPOSE] Focused participant {section.focused_participant_id} has no track, "
                f"using default layout for section {section.id}"
            )
        return list(range(len(inputs)))

    def _video_chain(
        self, idx: int, section: VideoSection, label: str, width: int, height: int
    ) -> str:
        speed = section.playback_speed
        setpts = "setpts=PTS-STARTPTS" if speed == 1.0 else f"setpts=(PTS-STARTPTS)/{_num(speed)}"
        return (
            f"[{idx}:v]trim=start={_num(section.start_time)}:end={_num(section.end_time)},{setpts},"
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,setsar=1[{label}]"
        )

    def _audio_chain(self, idx: int, media: MediaInput, section: VideoSection, label: str) -> str:
        normalize = f"aresample={self.audio_sample_rate},aformat=channel_layouts=stereo"
        if not media.has_audio:
            out_duration = section.duration / section.playback_speed
            return (
                f"anullsrc=channel_layout=stereo:sample_rate={self.audio_sample_rate},"
                f"atrim=duration={_num(out_duration)}[{label}]"
            )
        filters = [
            f"atrim=start={_num(section.start_time)}:end={_num(section.end_time)}",
            "asetpts=PTS-STARTPTS",
            *atempo_chain(section.playback_speed),
            normalize,
        ]
        return f"[{idx}:a]{','.join(filters)}[{label}]"

    def _section_graph(
        self,
        k: int,
        section: VideoSection,
        inputs: Sequence[MediaInput],
        canvas: tuple[int, int],
        framerate: int,
    ) -> list[str]:
        width, height = canvas
        tracks = self._resolve_tracks(section, inputs)
        parts: list[str] = []
        finish = f"fps={framerate},format=yuv420p"

        if len(tracks) == 1:
            parts.append(self._video_chain(tracks[0], section, f"s{k}v0", width, height))
            parts.append(f"[s{k}v0]{finish}[v{k}]")
        elif len(tracks) == 2:
            tile_w = _even(width // 2)
            for pos, idx in enumerate(tracks):
                parts.append(self._video_chain(idx, section, f"s{k}v{pos}", tile_w, height))
            parts.append(
                f"[s{k}v0][s{k}v1]hstack=inputs=2,"
                f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,{finish}[v{k}]"
            )
        else:
            cols, rows = grid_dimensions(len(tracks))
            tile_w, tile_h = _even(width // cols), _even(height // rows)
            layout = []
            for pos, idx in enumerate(tracks):
                parts.append(self._video_chain(idx, section, f"s{k}v{pos}", tile_w, tile_h))
                col, row = pos % cols, pos // cols
                layout.append(f"{col * tile_w}_{row * tile_h}")
            pads = "".join(f"[s{k}v{pos}]" for pos in range(len(tracks)))
            parts.append(
                f"{pads}xstack=inputs={len(tracks)}:layout={'|'.join(layout)}:fill=black,"
                f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,{finish}[v{k}]"
            )

        for pos, idx in enumerate(tracks):
            parts.append(self._audio_chain(idx, inputs[idx], section, f"s{k}a{pos}"))
        if len(tracks) == 1:
            parts.append(f"[s{k}a0]anull[a{k}]")
        else:
            pads = "".join(f"[s{k}a{pos}]" for pos in range(len(tracks)))
            parts.append(f"{pads}amix=inputs={len(tracks)}:duration=longest[a{k}]")

        return parts

    def build_filter_graph(
        self,
        inputs: Sequence[MediaInput],
        sections: Sequence[VideoSection],
        export_settings: ExportSettings,
        subtitle_path: str | None = None,
    ) -> str:
        """Build the filter_complex string. Output pads are [vout] and [aout]."""
        kept = sorted(kept_sections(sections), key=lambda s: s.start_time)
        if not inputs:
            raise CompositionError("No input media to compose")
        if not kept:
            raise CompositionError("Render plan has no kept sections")

        canvas = CANVAS_SIZES.get(export_settings.quality, CANVAS_SIZES["720p"])
        parts: list[str] = []
        for k, section in enumerate(kept):
            parts.extend(self._section_graph(k, section, inputs, canvas, export_settings.framerate))

        video_out = "vout" if not subtitle_path else "vcat"
        if len(kept) == 1:
            parts.append(f"[v0]null[{video_out}]")
            parts.append("[a0]anull[aout]")
        else:
            pads = "".join(f"[v{k}][a{k}]" for k in range(len(kept)))
            parts.append(f"{pads}concat=n={len(kept)}:v=1:a=1[{video_out}][aout]")

        if subtitle_path:
            parts.append(f"[vcat]subtitles=filename='{escape_filter_path(subtitle_path)}'[vout]")

        return ";".join(parts)

    def build_command(
        self,
        inputs: Sequence[MediaInput],
        sections: Sequence[VideoSection],
        export_settings: ExportSettings,
        output_path: str,
        subtitle_path: str | None = None,
    ) -> list[str]:
        filter_complex = self.build_filter_graph(inputs, sections, export_settings, subtitle_path)

        cmd = [self.ffmpeg_path, "-y", "-hide_banner", "-nostats"]
        for media in inputs:
            cmd.extend(["-i", media.path])
        cmd.extend([
            "-filter_complex", filter_complex,
            "-map", "[vout]",
            "-map", "[aout]",
        ])

        bitrate = video_bitrate_for(export_settings.quality)
        if export_settings.format == "webm":
            cmd.extend([
                "-c:v", "libvpx-vp9",
                "-b:v", bitrate,
                "-pix_fmt", "yuv420p",
                "-c:a", "libopus",
                "-b:a", self.audio_bitrate,
            ])
        else:
            cmd.extend([
                "-c:v", "libx264",
                "-preset", "fast",
                "-profile:v", "high",
                "-level", "4.0",
                "-pix_fmt", "yuv420p",
                "-b:v", bitrate,
                "-c:a", "aac",
                "-b:a", self.audio_bitrate,
                "-movflags", "+faststart",
            ])

        cmd.extend([
            "-ar", str(self.audio_sample_rate),
            "-r", str(export_settings.framerate),
            "-threads", str(self.threads),
            "-progress", "pipe:1",
            output_path,
        ])
        return cmd

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def compose(
        self,
        inputs: Sequence[MediaInput],
        sections: Sequence[VideoSection],
        export_settings: ExportSettings,
        output_path: str,
        subtitle_path: str | None = None,
        progress_callback: ProgressCallback | None = None,
        log_path: str | None = None,
    ) -> str:
        """Run ffmpeg and return ``output_path``.

        ``progress_callback`` receives the fraction (0-1) of the expected
        output duration encoded so far. ffmpeg's stderr goes to ``log_path``
        and its tail is attached to the CompositionError on failure.

        Raises:
            CompositionError: ffmpeg missing, non-zero exit, or no output file
        """
        cmd = self.build_command(inputs, sections, export_settings, output_path, subtitle_path)
        expected_duration = output_duration(sections)
        log_path = log_path or f"{output_path}.ffmpeg.log"

        logger.info(f"[COMPOSE] Running: {shlex.join(cmd)}")

        with open(log_path, "wb") as log_file:
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=log_file,
                    text=True,
                )
            except FileNotFoundError as e:
                raise CompositionError(f"ffmpeg not found at {self.ffmpeg_path}") from e

            try:
                for line in proc.stdout:
                    line = line.strip()
                    if line.startswith(("out_time_us=", "out_time_ms=")):
                        # Both keys carry microseconds
                        try:
                            time_s = int(line.split("=", 1)[1]) / 1_000_000
                        except ValueError:
                            continue
                        if progress_callback and expected_duration > 0:
                            progress_callback(min(1.0, max(0.0, time_s / expected_duration)))
                    elif line == "progress=end":
                        break
                returncode = proc.wait()
            except BaseException:
                proc.kill()
                proc.wait()
                _remove_partial(output_path)
                raise

        if returncode != 0:
            _remove_partial(output_path)
            diagnostics = read_log_tail(log_path)
            logger.error(f"[COMPOSE] ffmpeg exited with code {returncode}: {diagnostics}")
            raise CompositionError(f"ffmpeg exited with code {returncode}", diagnostics=diagnostics)

        if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
            _remove_partial(output_path)
            raise CompositionError("ffmpeg produced no output file")

        if progress_callback:
            progress_callback(1.0)

        logger.info(f"[COMPOSE] Output ready: {output_path} ({os.path.getsize(output_path)} bytes)")
        return output_path


def read_log_tail(log_path: str, max_lines: int = 20) -> str:
    try:
        lines = Path(log_path).read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return ""
    return "\n".join(line for line in lines[-max_lines:] if line.strip())


def _remove_partial(output_path: str) -> None:
    try:
        os.remove(output_path)
    except FileNotFoundError:
        pass
