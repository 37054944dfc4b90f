from src.render.compositor import MediaCompositor, MediaInput
from src.render.render_plan import (
    apply_focus_segments,
    build_ai_plan,
    build_render_plan,
    validate_plan,
)
from src.render.subtitles import SubtitleEntry, derive_subtitles

__all__ = [
    "MediaCompositor",
    "MediaInput",
    "build_ai_plan",
    "build_render_plan",
    "validate_plan",
    "apply_focus_segments",
    "SubtitleEntry",
    "derive_subtitles",
]
