"""
Subtitle derivation for exports.

Words come from the per-recording transcriptions. A word becomes a subtitle
entry only when it lies entirely inside a kept section of the render plan, so
no speech from a removed range can leak into the burned-in captions. Words that
straddle a cut are dropped, not truncated.

Entries keep source-timeline times. ``remap_to_output_timeline`` shifts them to
the rendered timeline (cuts removed, speed applied) right before burn-in.
"""

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Sequence

from src.render.render_plan import kept_sections
from src.schemas.export import Transcription, VideoSection

logger = logging.getLogger(__name__)

DEFAULT_PHRASE_MAX_GAP = 1.0
DEFAULT_PHRASE_MAX_WORDS = 8


@dataclass(frozen=True)
class SubtitleEntry:
    index: int  # 1-based
    start_time: float
    end_time: float
    text: str
    participant_index: int | None = None  # 1-based position of the transcription


def _in_kept_section(start: float, end: float, sections: Sequence[VideoSection]) -> bool:
    return any(start >= s.start_time and end <= s.end_time for s in sections)


def derive_subtitles(
    transcriptions: Sequence[Transcription],
    sections: Sequence[VideoSection],
    chronological: bool = True,
) -> list[SubtitleEntry]:
    """One entry per word fully inside a non-deleted section.

    With ``chronological`` (the default) entries from all transcriptions are
    sorted by start time before numbering. Otherwise they are numbered in scan
    order: transcription by transcription, word by word.
    """
    kept = kept_sections(sections)
    if not kept:
        return []

    collected: list[tuple[float, float, str, int]] = []
    for participant_index, transcription in enumerate(transcriptions, start=1):
        for word in transcription.words():
            if _in_kept_section(word.start, word.end, kept):
                collected.append((word.start, word.end, word.word, participant_index))

    if chronological:
        # Stable: ties keep transcription order
        collected.sort(key=lambda w: w[0])

    return [
        SubtitleEntry(
            index=i,
            start_time=start,
            end_time=end,
            text=text,
            participant_index=participant_index,
        )
        for i, (start, end, text, participant_index) in enumerate(collected, start=1)
    ]


def remap_to_output_timeline(
    entries: Sequence[SubtitleEntry],
    sections: Sequence[VideoSection],
) -> list[SubtitleEntry]:
    """Shift entries from source time to rendered time.

    Each kept section starts in the output where the previous kept sections
    end (their lengths divided by their playback speed). Entries outside every
    kept section are dropped.
    """
    offsets: list[tuple[VideoSection, float]] = []
    cursor = 0.0
    for section in kept_sections(sections):
        offsets.append((section, cursor))
        cursor += section.duration / section.playback_speed

    remapped: list[SubtitleEntry] = []
    for entry in entries:
        for section, offset in offsets:
            if entry.start_time >= section.start_time and entry.end_time <= section.end_time:
                speed = section.playback_speed
                remapped.append(
                    replace(
                        entry,
                        start_time=offset + (entry.start_time - section.start_time) / speed,
                        end_time=offset + (entry.end_time - section.start_time) / speed,
                    )
                )
                break
    return remapped


def group_into_phrases(
    entries: Sequence[SubtitleEntry],
    max_gap: float = DEFAULT_PHRASE_MAX_GAP,
    max_words: int = DEFAULT_PHRASE_MAX_WORDS,
) -> list[SubtitleEntry]:
    """Merge word entries into caption-sized phrases.

    A new phrase starts when the speaker changes, when the silence since the
    previous word exceeds ``max_gap`` seconds, or once a phrase holds
    ``max_words`` words. Phrase text is prefixed with ``[Participant N]``.
    """
    phrases: list[list[SubtitleEntry]] = []
    current: list[SubtitleEntry] = []

    for entry in sorted(entries, key=lambda e: e.start_time):
        if current:
            gap = entry.start_time - current[-1].end_time
            if (
                entry.participant_index != current[-1].participant_index
                or gap > max_gap
                or len(current) >= max_words
            ):
                phrases.append(current)
                current = []
        current.append(entry)

    if current:
        phrases.append(current)

    result = []
    for i, words in enumerate(phrases, start=1):
        participant = words[0].participant_index
        text = " ".join(w.text for w in words)
        if participant is not None:
            text = f"[Participant {participant}] {text}"
        result.append(
            SubtitleEntry(
                index=i,
                start_time=words[0].start_time,
                end_time=words[-1].end_time,
                text=text,
                participant_index=participant,
            )
        )
    return result


def format_srt_time(seconds: float) -> str:
    """Format seconds as ``HH:MM:SS,mmm``; milliseconds are truncated."""
    # The epsilon absorbs float error such as 1.001 * 1000 = 1000.9999
    total_ms = int(max(seconds, 0.0) * 1000 + 1e-6)
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, ms = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{ms:03d}"


def render_srt(entries: Sequence[SubtitleEntry]) -> str:
    blocks = [
        f"{e.index}\n{format_srt_time(e.start_time)} --> {format_srt_time(e.end_time)}\n{e.text}\n"
        for e in entries
    ]
    return "\n".join(blocks)


def write_srt_file(entries: Sequence[SubtitleEntry], path: str | Path) -> Path:
    path = Path(path)
    path.write_text(render_srt(entries), encoding="utf-8")
    logger.info(f"[SUBTITLES] Wrote {len(entries)} entries to {path.name}")
    return path
