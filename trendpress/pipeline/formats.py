"""Post formats the synthesizer can write in."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class PostFormat:
    id: str
    description: str
    trigger: str
    structure: str


POST_FORMATS: Dict[str, PostFormat] = {
    f.id: f
    for f in (
        PostFormat(
            id="NEWS_FLASH",
            description="Breaking announcement: punchy, urgent, factual",
            trigger="Major product launch, funding round, acquisition, regulatory decision",
            structure="Hook -> Key fact -> Why it matters -> CTA",
        ),
        PostFormat(
            id="LISTICLE",
            description="Numbered list of tools, tips, or ranked items",
            trigger="Multiple tools, frameworks, tips, or options being compared",
            structure="Hook -> Numbered items (3-7 max) -> Closing insight",
        ),
        PostFormat(
            id="HOT_TAKE",
            description="Opinionated, debate-starting single perspective",
            trigger="Controversial opinion, industry debate, contrarian view",
            structure="Bold claim -> Supporting argument -> Invitation to debate",
        ),
        PostFormat(
            id="QUOTE_DRIVEN",
            description="Centers around a notable quote from an industry figure",
            trigger="A specific person said something significant or surprising",
            structure="Hook -> Key quote -> Context -> Implication",
        ),
        PostFormat(
            id="EXPLAINER",
            description="Breaks down a complex concept into simple terms",
            trigger="Technical concept, new term, or complex development being discussed",
            structure="Hook (what people are confused about) -> Simple explanation -> So what?",
        ),
        PostFormat(
            id="TREND_ALERT",
            description="Spotlights an emerging pattern across multiple sources",
            trigger="Same theme appearing from multiple independent accounts",
            structure="Hook (the pattern) -> Evidence points -> What it signals",
        ),
    )
}

DEFAULT_FORMAT = "LISTICLE"


def get_format(format_id: str) -> PostFormat:
    """Format by id; unknown ids fall back to ``LISTICLE``."""
    return POST_FORMATS.get((format_id or "").upper(), POST_FORMATS[DEFAULT_FORMAT])
