"""Deterministic transforms shipped with the engine."""

import re
from typing import Any, Dict, List, Optional

from ..core.logging import get_logger
from ..core.transform_registry import TransformRegistry

logger = get_logger(__name__)

_WORD = re.compile(r"[a-z0-9']+")

_STOPWORDS = frozenset(
    "a an and are as at be by for from has have i in is it its me my of on or please "
    "that the this to was were will with you your".split()
)


def normalize_text(data: Dict[str, Any], field: str = "request", target: str = "text", **kwargs) -> Dict[str, Any]:
    """
    Lower-case and collapse whitespace in a text field.

    Args:
        data: Node input
        field: Input field holding the text
        target: Output field receiving the normalized text

    Returns:
        Dictionary with the normalized text
    """
    text = str(data.get(field, ""))
    normalized = " ".join(text.lower().split())
    logger.debug(f"Normalized {len(text)} characters into {len(normalized)}")
    return {target: normalized}


def extract_keywords(data: Dict[str, Any], field: str = "text", limit: int = 5, **kwargs) -> Dict[str, Any]:
    """
    Extract the most frequent non-stopword tokens.

    Ties keep first-occurrence order.

    Returns:
        Dictionary with ``keywords`` and ``keyword_count``
    """
    counts: Dict[str, int] = {}
    for word in _WORD.findall(str(data.get(field, "")).lower()):
        if word not in _STOPWORDS:
            counts[word] = counts.get(word, 0) + 1

    ranked = sorted(counts, key=lambda word: -counts[word])
    keywords = ranked[:limit]
    return {"keywords": keywords, "keyword_count": len(keywords)}


def word_count(data: Dict[str, Any], field: str = "text", **kwargs) -> Dict[str, Any]:
    text = str(data.get(field, ""))
    return {"word_count": len(text.split()), "char_count": len(text)}


def simple_math(data: Dict[str, Any], field: str = "value", operation: str = "add", operand: float = 1.0,
                **kwargs) -> Dict[str, Any]:
    """
    Apply an arithmetic operation to a numeric field.

    Args:
        data: Node input
        field: Input field holding the number
        operation: add, subtract, multiply or divide
        operand: Right-hand operand

    Returns:
        Dictionary with ``result`` and the applied ``operation``

    Raises:
        ValueError: On an unknown operation or division by zero
    """
    current = data.get(field, 0)
    if operation == "add":
        result = current + operand
    elif operation == "subtract":
        result = current - operand
    elif operation == "multiply":
        result = current * operand
    elif operation == "divide":
        if operand == 0:
            raise ValueError("Division by zero")
        result = current / operand
    else:
        raise ValueError(f"Unknown operation: {operation}")

    logger.debug(f"{operation}({current}, {operand}) = {result}")
    return {"result": result, "operation": operation}


def threshold_check(data: Dict[str, Any], field: str = "result", threshold: float = 10.0, **kwargs) -> Dict[str, Any]:
    """Flag whether a numeric field exceeds a threshold; handy for edge conditions."""
    value = data.get(field, 0)
    return {"above_threshold": value > threshold, "value": value, "threshold": threshold}


def select_fields(data: Dict[str, Any], fields: Optional[List[str]] = None,
                  rename: Optional[Dict[str, str]] = None, **kwargs) -> Dict[str, Any]:
    """Keep only ``fields`` (all when omitted) and rename some of them."""
    selected = {key: value for key, value in data.items() if fields is None or key in fields}
    for old, new in (rename or {}).items():
        if old in selected:
            selected[new] = selected.pop(old)
    return selected


def render_template(data: Dict[str, Any], template: str = "", target: str = "text", **kwargs) -> Dict[str, Any]:
    """Render ``template`` with the input fields (``str.format`` syntax)."""
    return {target: template.format_map(data)}


BUILTIN_TRANSFORMS = {
    "normalize_text": normalize_text,
    "extract_keywords": extract_keywords,
    "word_count": word_count,
    "simple_math": simple_math,
    "threshold_check": threshold_check,
    "select_fields": select_fields,
    "render_template": render_template,
}


def register_builtin_transforms(registry: TransformRegistry, replace: bool = False) -> int:
    """Register every built-in transform. Returns how many were registered."""
    for name, function in BUILTIN_TRANSFORMS.items():
        registry.register_transform(name, function, replace=replace)
    return len(BUILTIN_TRANSFORMS)
