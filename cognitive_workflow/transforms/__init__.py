"""Built-in deterministic transforms."""

from .builtin import (
    BUILTIN_TRANSFORMS,
    extract_keywords,
    normalize_text,
    register_builtin_transforms,
    render_template,
    select_fields,
    simple_math,
    threshold_check,
    word_count,
)

__all__ = [
    "BUILTIN_TRANSFORMS",
    "extract_keywords",
    "normalize_text",
    "register_builtin_transforms",
    "render_template",
    "select_fields",
    "simple_math",
    "threshold_check",
    "word_count",
]
