"""
Render plan construction.

A render plan is the ordered list of VideoSections that describes exactly what
the exported video contains. Sections are contiguous, non-overlapping, sorted
by start time and together span [0, total_duration]. Deleted sections are
skipped by the compositor; kept sections carry their playback speed and,
optionally, the participant to focus on.

Three sources feed a plan:
1. Explicit user edits: passed through after validation.
2. AI suggestions (segments worth keeping + speed recommendations): the gaps
   between kept segments become deleted sections.
3. Nothing at all: one kept section covering the whole recording.

Focus segments are applied last, to kept sections fully inside their range.
"""

import logging
from typing import Sequence

from src.exceptions import InvalidInputError
from src.schemas.export import (
    AISuggestions,
    FocusSegment,
    Recording,
    SpeedRecommendation,
    ValidSegment,
    VideoSection,
)

logger = logging.getLogger(__name__)

# Section boundaries closer than this are considered equal (1 ms).
TIME_EPSILON = 1e-3

LONG_SILENCE_SECONDS = 10.0
PAUSE_SECONDS = 3.0


def _section_id(start: float, end: float) -> str:
    return f"section-{start:g}-{end:g}"


def classify_gap(duration: float) -> str:
    """Label a removed gap by its length. Informational only."""
    if duration > LONG_SILENCE_SECONDS:
        return "long silence"
    if duration >= PAUSE_SECONDS:
        return "pause/filler"
    return "brief gap"


def _deleted_gap(start: float, end: float) -> VideoSection:
    return VideoSection(
        id=_section_id(start, end),
        start_time=start,
        end_time=end,
        is_deleted=True,
        playback_speed=1.0,
        removal_reason=classify_gap(end - start),
    )


def _speed_for(start: float, end: float, recommendations: Sequence[SpeedRecommendation]) -> float:
    for rec in recommendations:
        if start >= rec.start_time - TIME_EPSILON and end <= rec.end_time + TIME_EPSILON:
            return rec.speed
    return 1.0


def build_ai_plan(
    valid_segments: Sequence[ValidSegment],
    speed_recommendations: Sequence[SpeedRecommendation],
    total_duration: float,
) -> list[VideoSection]:
    """Build a plan from AI "segments to keep" and speed recommendations.

    Walks the timeline from 0: every gap before a kept segment becomes a
    deleted section, every kept segment a kept section. Overlapping segments
    are clipped to the cursor so the result never overlaps.

    Raises:
        InvalidInputError: if total_duration is not positive
    """
    if total_duration <= 0:
        raise InvalidInputError("Total duration must be greater than 0")

    if not valid_segments:
        return [_deleted_gap(0.0, total_duration)]

    sections: list[VideoSection] = []
    cursor = 0.0

    for segment in sorted(valid_segments, key=lambda s: (s.start_time, s.end_time)):
        start = max(segment.start_time, cursor)
        end = min(segment.end_time, total_duration)
        if end - start <= TIME_EPSILON:
            continue

        if start - cursor > TIME_EPSILON:
            sections.append(_deleted_gap(cursor, start))
        else:
            start = cursor

        sections.append(
            VideoSection(
                id=_section_id(start, end),
                start_time=start,
                end_time=end,
                is_deleted=False,
                playback_speed=_speed_for(start, end, speed_recommendations),
            )
        )
        cursor = end

    if total_duration - cursor > TIME_EPSILON:
        sections.append(_deleted_gap(cursor, total_duration))
    elif sections:
        # Snap a sub-epsilon tail onto the last section
        last = sections[-1]
        if last.end_time != total_duration:
            sections[-1] = last.model_copy(update={"end_time": total_duration})

    if not sections:
        return [_deleted_gap(0.0, total_duration)]

    kept = sum(1 for s in sections if not s.is_deleted)
    logger.info(
        f"[PLAN] AI plan: {len(sections)} sections ({kept} kept) over {total_duration:.2f}s"
    )
    return sections


def validate_plan(
    sections: Sequence[VideoSection],
    total_duration: float | None = None,
) -> list[VideoSection]:
    """Check the contiguity invariant and return the plan unchanged.

    Raises:
        InvalidInputError: empty plan, unsorted, gaps/overlaps, or a plan that
            does not start at 0 / end at total_duration.
    """
    if not sections:
        raise InvalidInputError("Render plan has no sections")

    first = sections[0]
    if abs(first.start_time) > TIME_EPSILON:
        raise InvalidInputError(f"Render plan must start at 0, starts at {first.start_time}")

    for prev, current in zip(sections, sections[1:]):
        if current.start_time < prev.start_time:
            raise InvalidInputError(
                f"Sections must be sorted by startTime: {current.id} starts before {prev.id}"
            )
        if abs(current.start_time - prev.end_time) > TIME_EPSILON:
            kind = "overlap" if current.start_time < prev.end_time else "gap"
            raise InvalidInputError(
                f"Sections {prev.id} and {current.id} are not contiguous ({kind} at "
                f"{prev.end_time}-{current.start_time})"
            )

    if total_duration is not None and abs(sections[-1].end_time - total_duration) > TIME_EPSILON:
        raise InvalidInputError(
            f"Render plan ends at {sections[-1].end_time}, expected {total_duration}"
        )

    return list(sections)


def apply_focus_segments(
    sections: Sequence[VideoSection],
    focus_segments: Sequence[FocusSegment],
) -> list[VideoSection]:
    """Give kept sections fully inside a focus segment that segment's participant.

    Partial overlaps keep the default layout. A focus already chosen on the
    section by the user is left alone.
    """
    if not focus_segments:
        return list(sections)

    result: list[VideoSection] = []
    for section in sections:
        if section.is_deleted or section.focused_participant_id:
            result.append(section)
            continue

        focus = next(
            (
                f
                for f in focus_segments
                if section.start_time >= f.start_time - TIME_EPSILON
                and section.end_time <= f.end_time + TIME_EPSILON
            ),
            None,
        )
        if focus is None:
            result.append(section)
        else:
            result.append(section.model_copy(update={"focused_participant_id": focus.focused_participant_id}))
    return result


def total_duration_of(recordings: Sequence[Recording]) -> float:
    """The plan spans the longest recording."""
    return max((r.duration for r in recordings), default=0.0)


def build_render_plan(
    recordings: Sequence[Recording],
    video_sections: Sequence[VideoSection] | None = None,
    ai_suggestions: AISuggestions | None = None,
    focus_segments: Sequence[FocusSegment] | None = None,
) -> list[VideoSection]:
    """Resolve the final render plan for a submission.

    Raises:
        InvalidInputError: no recordings, or an explicit plan that breaks the
            contiguity invariant or does not end at the longest recording.
    """
    if not recordings:
        raise InvalidInputError("No recordings found for this export")

    total_duration = total_duration_of(recordings)

    if video_sections:
        plan = validate_plan(video_sections, total_duration if total_duration > 0 else None)
    elif ai_suggestions is not None:
        plan = build_ai_plan(
            ai_suggestions.valid_segments,
            ai_suggestions.speed_recommendations,
            total_duration,
        )
    else:
        if total_duration <= 0:
            raise InvalidInputError("Recordings have no duration and no video sections were given")
        plan = [
            VideoSection(
                id=_section_id(0.0, total_duration),
                start_time=0.0,
                end_time=total_duration,
            )
        ]

    return apply_focus_segments(plan, focus_segments or [])


def kept_sections(sections: Sequence[VideoSection]) -> list[VideoSection]:
    return [s for s in sections if not s.is_deleted]


def output_duration(sections: Sequence[VideoSection]) -> float:
    """Length of the rendered video in seconds (cuts removed, speed applied)."""
    return sum(s.duration / s.playback_speed for s in kept_sections(sections))
