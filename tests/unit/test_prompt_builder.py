"""Tests for picaso.core.prompt_builder — prompt validation and composition.

Tests cover:
- The three-word minimum enforced before any network call.
- Filter category validation, de-duplication and blank removal.
- Fixed rendering order and labels of filter sections.
- Omission of empty categories and of the whole filter block.
- Purity of compose_prompt.
"""

from __future__ import annotations

import pydantic
import pytest

from picaso.core.errors import ValidationError
from picaso.core.models import FilterCategory
from picaso.core.prompt_builder import (
    BASE_PROMPT,
    build_request,
    compose_prompt,
    count_words,
    render_filter_sections,
)


class TestCountWords:
    """Test whitespace word counting."""

    def test_counts_words(self):
        assert count_words("a red fox") == 3

    def test_ignores_surrounding_and_repeated_whitespace(self):
        assert count_words("  a   red\tfox \n") == 3

    def test_empty_string_has_no_words(self):
        assert count_words("   ") == 0


class TestBuildRequest:
    """Test build_request validation."""

    def test_three_words_accepted(self):
        """Exactly three words is the minimum valid prompt."""
        request = build_request("a red fox")
        assert request.raw_prompt == "a red fox"

    def test_prompt_is_trimmed(self):
        request = build_request("   a red fox in snow  ")
        assert request.raw_prompt == "a red fox in snow"

    @pytest.mark.parametrize("prompt", ["", "hi", "two words", "   spaced    out   "])
    def test_short_prompt_rejected(self, prompt):
        """Fewer than three words should raise a user-facing ValidationError."""
        with pytest.raises(ValidationError, match="at least 3 words"):
            build_request(prompt)

    def test_unknown_filter_category_rejected(self):
        with pytest.raises(ValidationError, match="Unknown filter categories: mood"):
            build_request("a red fox", {"mood": ["calm"]})

    def test_non_string_filter_value_rejected(self):
        with pytest.raises(ValidationError):
            build_request("a red fox", {"medium": [42]})

    @pytest.mark.parametrize("value", ["oil painting", {"oil": "painting"}, None])
    def test_filter_value_not_a_list_rejected(self, value):
        """A bare string must not be split into one value per character."""
        with pytest.raises(ValidationError):
            build_request("a red fox in snow", {"medium": value})

    def test_filter_tuple_accepted(self):
        request = build_request("a red fox in snow", {"medium": ("oil painting",)})
        assert request.filters[FilterCategory.MEDIUM] == ["oil painting"]

    def test_every_category_present(self):
        """Unselected categories map to an empty list."""
        request = build_request("a red fox", {"tone": ["warm"]})
        assert set(request.filters) == set(FilterCategory)
        assert request.filters[FilterCategory.MEDIUM] == []
        assert request.filters[FilterCategory.TONE] == ["warm"]

    def test_duplicates_and_blanks_removed(self):
        request = build_request(
            "a red fox", {"medium": ["oil painting", " oil painting ", "", "  ", "watercolor"]}
        )
        assert request.filters[FilterCategory.MEDIUM] == ["oil painting", "watercolor"]

    def test_request_is_frozen(self):
        request = build_request("a red fox")
        with pytest.raises(pydantic.ValidationError):
            request.raw_prompt = "something else entirely"

    def test_filters_as_dict_uses_plain_keys(self):
        request = build_request("a red fox", {"style": ["baroque"]})
        assert request.filters_as_dict() == {
            "medium": [],
            "style": ["baroque"],
            "tone": [],
            "realism": [],
        }


class TestComposePrompt:
    """Test compose_prompt output structure."""

    def test_no_filters(self):
        """Without filters the output is base template and prompt only."""
        composed = compose_prompt(build_request("a red fox in snow"))
        assert composed == f"{BASE_PROMPT}\n\na red fox in snow"

    def test_base_template_first(self):
        composed = compose_prompt(build_request("a red fox in snow", {"tone": ["warm"]}))
        assert composed.startswith(BASE_PROMPT)

    def test_filter_block_follows_prompt(self):
        composed = compose_prompt(
            build_request("a red fox in snow", {"medium": ["oil painting", "watercolor"]})
        )
        assert composed.endswith("a red fox in snow\n\nMedium: oil painting, watercolor")

    def test_sections_in_fixed_order(self):
        """Sections render medium, style, tone, realism regardless of input order."""
        request = build_request(
            "a red fox in snow",
            {
                "realism": ["stylized"],
                "tone": ["warm"],
                "style": ["impressionism"],
                "medium": ["oil painting"],
            },
        )
        assert render_filter_sections(request) == [
            "Medium: oil painting",
            "Style: impressionism",
            "Tone: warm",
            "Realism level: stylized",
        ]

    def test_empty_categories_omitted(self):
        request = build_request("a red fox in snow", {"medium": [], "tone": ["moody"]})
        composed = compose_prompt(request)
        assert "Medium:" not in composed
        assert "Style:" not in composed
        assert "Tone: moody" in composed

    def test_all_empty_filters_same_as_none(self):
        with_empty = compose_prompt(
            build_request("a red fox in snow", {"medium": [], "style": [], "tone": []})
        )
        without = compose_prompt(build_request("a red fox in snow"))
        assert with_empty == without

    def test_deterministic(self):
        request = build_request("a red fox in snow", {"style": ["baroque", "cubism"]})
        assert compose_prompt(request) == compose_prompt(request)
