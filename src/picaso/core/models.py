"""Pydantic data models shared by the PICASO core.

Models
------
GenerationRequest
    Validated, immutable user input handed to the pipeline.
Artwork
    Result of one successful pipeline run.
QuotaAttempt / QuotaStatus
    Entries of the rolling quota window and the tracker's verdict.
PersistenceAttempt / PersistenceResult
    Outcome of each persistence strategy and of the whole chain.
ProgressEvent
    One ``(percentage, message)`` checkpoint for the presentation layer.
CheckoutSessionRequest / CheckoutSession
    Payment session request and the provider's response.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FilterCategory(str, Enum):
    """Categorical filters a user may attach to a prompt."""

    MEDIUM = "medium"
    STYLE = "style"
    TONE = "tone"
    REALISM = "realism"


# Fixed rendering order for filter sections.
FILTER_ORDER: tuple[FilterCategory, ...] = (
    FilterCategory.MEDIUM,
    FilterCategory.STYLE,
    FilterCategory.TONE,
    FilterCategory.REALISM,
)

MIN_PROMPT_WORDS = 3


class GenerationRequest(BaseModel):
    """A prompt and its filters, validated and frozen.

    Attributes:
        raw_prompt: The user's prompt, trimmed.  Must contain at least
            ``MIN_PROMPT_WORDS`` whitespace-separated words.
        filters: Selected values per filter category.  Every category is
            present; unselected categories map to an empty list.
    """

    model_config = ConfigDict(frozen=True)

    raw_prompt: str
    filters: dict[FilterCategory, list[str]] = Field(default_factory=dict)

    @field_validator("raw_prompt")
    @classmethod
    def _check_word_count(cls, value: str) -> str:
        value = value.strip()
        if len(value.split()) < MIN_PROMPT_WORDS:
            raise ValueError(f"Prompt must contain at least {MIN_PROMPT_WORDS} words")
        return value

    @field_validator("filters")
    @classmethod
    def _fill_categories(
        cls, value: dict[FilterCategory, list[str]]
    ) -> dict[FilterCategory, list[str]]:
        filled: dict[FilterCategory, list[str]] = {}
        for category in FILTER_ORDER:
            seen: list[str] = []
            for item in value.get(category, []):
                item = item.strip()
                if item and item not in seen:
                    seen.append(item)
            filled[category] = seen
        return filled

    def filters_as_dict(self) -> dict[str, list[str]]:
        """Return the filters keyed by plain category names."""
        return {category.value: list(values) for category, values in self.filters.items()}


class Artwork(BaseModel):
    """A generated image ready for review and checkout.

    Attributes:
        image_url: Durable store URL, or the provider's own URL when every
            durable strategy failed.
        prompt: The user's original (uncomposed) prompt.
        filters: Filters the artwork was generated with.
        timestamp: Creation time in epoch milliseconds.
        is_permanent: ``True`` only when ``image_url`` came from the durable
            store.
    """

    image_url: str
    prompt: str
    filters: dict[str, list[str]] = Field(default_factory=dict)
    timestamp: int
    is_permanent: bool


class QuotaAttempt(BaseModel):
    """One recorded generation inside the quota window."""

    model_config = ConfigDict(populate_by_name=True)

    timestamp: int
    image_url: str = Field(alias="imageUrl")
    prompt: str


class QuotaStatus(BaseModel):
    """Whether another generation is allowed right now."""

    allowed: bool
    remaining: int = Field(ge=0)
    reset_at: int


class PersistenceAttempt(BaseModel):
    """Outcome of one persistence strategy try."""

    strategy: str
    succeeded: bool
    url: str | None = None
    reason: str | None = None


class PersistenceResult(BaseModel):
    """Final outcome of the persistence chain."""

    url: str
    is_permanent: bool
    attempts: list[PersistenceAttempt] = Field(default_factory=list)


class ProgressEvent(BaseModel):
    """A progress checkpoint reported to the presentation layer."""

    percentage: int = Field(ge=0, le=100)
    message: str


class LineItem(BaseModel):
    """The single print product sold per checkout session."""

    name: str
    description: str
    unit_amount: int
    currency: str
    images: list[str] = Field(default_factory=list)
    quantity: int = 1


class CheckoutSessionRequest(BaseModel):
    """Everything the payment session service needs to create a session."""

    line_item: LineItem
    success_url: str
    cancel_url: str
    shipping_countries: list[str]
    metadata: dict[str, str]


class CheckoutSession(BaseModel):
    """A created payment session."""

    session_id: str
    redirect_url: str
