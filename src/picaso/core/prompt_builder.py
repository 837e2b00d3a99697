"""Prompt composition for PICASO.

The composer merges a fixed base template, the user's prompt and the
optional categorical filters into the single string sent to the image
generation service.

Template Structure::

    [Fixed: gallery-quality base template]

    [User prompt]

    Medium: oil painting, watercolor
    Style: impressionism
    Tone: warm
    Realism level: stylized

Filter sections always appear in the order medium, style, tone, realism.
A category with no selected values is omitted entirely, and the whole
filter block is omitted when no category has a value.

Usage
-----
::

    request = build_request("a red fox in snow", {"medium": ["oil painting"]})
    composed = compose_prompt(request)
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

import pydantic

from picaso.core.errors import ValidationError
from picaso.core.models import (
    FILTER_ORDER,
    MIN_PROMPT_WORDS,
    FilterCategory,
    GenerationRequest,
)

# ---------------------------------------------------------------------------
# Fixed base template.
# A constant rather than configuration because it defines the quality bar of
# every print we sell.  Users control variation through prompt and filters.
# ---------------------------------------------------------------------------

BASE_PROMPT = (
    "A highly detailed, gallery-quality artwork, composed with professional artistry. "
    "Emphasis on striking composition, balanced color harmony, and refined detail. "
    "The piece should feel premium, visually captivating, and suitable as a framed "
    "canvas print. Inspired by fine art photography and masterful painting techniques."
)

FILTER_LABELS: dict[FilterCategory, str] = {
    FilterCategory.MEDIUM: "Medium",
    FilterCategory.STYLE: "Style",
    FilterCategory.TONE: "Tone",
    FilterCategory.REALISM: "Realism level",
}


def count_words(text: str) -> int:
    """Count whitespace-separated words in trimmed text."""
    return len(text.strip().split())


def build_request(
    raw_prompt: str,
    filters: Mapping[str, Sequence[str]] | None = None,
) -> GenerationRequest:
    """Validate raw user input and freeze it into a GenerationRequest.

    Args:
        raw_prompt: Prompt text as typed by the user.
        filters: Optional mapping of category name to selected values.
            Keys must be one of ``medium``, ``style``, ``tone``, ``realism``.

    Returns:
        The validated request.

    Raises:
        ValidationError: If the prompt has fewer than three words, a filter
            category is unknown, or a filter value is not a list of strings.
    """
    if not isinstance(raw_prompt, str) or count_words(raw_prompt) < MIN_PROMPT_WORDS:
        raise ValidationError(f"Please enter at least {MIN_PROMPT_WORDS} words for your prompt.")

    known = {category.value for category in FilterCategory}
    unknown = sorted(set(filters or {}) - known)
    if unknown:
        raise ValidationError(f"Unknown filter categories: {', '.join(unknown)}")

    for category, values in (filters or {}).items():
        # A bare string is a sequence too; it would split into characters.
        if not isinstance(values, (list, tuple)) or not all(isinstance(v, str) for v in values):
            raise ValidationError(f"Filter values for '{category}' must be a list of strings")

    try:
        return GenerationRequest(
            raw_prompt=raw_prompt,
            filters={key: list(values) for key, values in (filters or {}).items()},
        )
    except (pydantic.ValidationError, TypeError) as e:
        raise ValidationError(f"Invalid generation request: {e}") from e


def render_filter_sections(request: GenerationRequest) -> list[str]:
    """Render the non-empty filter categories as ``"Label: v1, v2"`` lines."""
    sections: list[str] = []
    for category in FILTER_ORDER:
        values = request.filters.get(category, [])
        if values:
            sections.append(f"{FILTER_LABELS[category]}: {', '.join(values)}")
    return sections


def compose_prompt(request: GenerationRequest) -> str:
    """Compose the full generation prompt.

    Pure and total: the same request always yields the same string.

    Args:
        request: A validated generation request.

    Returns:
        Base template, user prompt and filter block separated by blank lines.
    """
    parts = [BASE_PROMPT, request.raw_prompt]

    sections = render_filter_sections(request)
    if sections:
        parts.append("\n".join(sections))

    return "\n\n".join(parts)
