"""Data models for formatted alerts."""

from __future__ import annotations

from dataclasses import dataclass, field

InlineButtons = list[list[dict[str, str]]]


@dataclass(frozen=True)
class FormattedAlert:
    """A signal rendered for both delivery sinks.

    Attributes:
        detailed: Full HTML message for the primary chat.
        redacted: HTML message for the public chat, without wallet identities.
        caption: Short HTML caption used when the alert is sent as an image.
        buttons: Inline keyboard rows attached to every variant.
    """

    detailed: str
    redacted: str
    caption: str
    buttons: InlineButtons = field(default_factory=list)
