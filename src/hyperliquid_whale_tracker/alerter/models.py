"""Data models for rendered alerts."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class FormattedAlert:
    """An alert rendered for text-based sinks.

    Attributes:
        title: Short headline.
        body: Multi-line summary (content depends on formatter verbosity).
        plain_text: Full plain-text rendering.
        compact: Single-line rendering suitable for log lines.
        links: Named URLs relevant to the alert.
    """

    title: str
    body: str
    plain_text: str
    compact: str
    links: dict[str, str] = field(default_factory=dict)
