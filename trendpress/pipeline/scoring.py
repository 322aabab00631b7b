"""
Hot-score policy functions.

All functions are pure: they take the reference time explicitly so a score
can be replayed from the same member posts and timestamp.

Topic hot score::

    decayed  = sum((likes + 3*replies + 2*reposts) * 0.5 ** (age_h / half_life))
    hot      = 10 * log10(1 + decayed) * (1 + ln(distinct_authors))

The log keeps a single viral post from dominating; the author factor
rewards the same story surfacing from independent accounts. A lone post
needs ~100k decayed engagement to reach 50, three authors need ~250.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, List, Optional

from trendpress.models import Post

DEFAULT_HALF_LIFE_HOURS = 24.0

# (max age in hours, weight)
_FRESHNESS_STEPS = ((6.0, 1.0), (24.0, 0.75), (48.0, 0.45), (72.0, 0.2))


def raw_engagement(post: Post) -> float:
    """Weighted engagement of one post. Replies weigh most."""
    return post.likes + 3 * post.replies + 2 * post.reposts


def decay_factor(age_hours: float, half_life_hours: float = DEFAULT_HALF_LIFE_HOURS) -> float:
    """Half-life decay: 1.0 at age 0, 0.5 at one half-life."""
    if half_life_hours <= 0:
        raise ValueError("half_life_hours must be positive")
    return 0.5 ** (max(0.0, age_hours) / half_life_hours)


def freshness_multiplier(age_hours: float) -> float:
    """Sliding freshness weight: full value up to 6h, nothing past 72h."""
    for max_age, weight in _FRESHNESS_STEPS:
        if age_hours <= max_age:
            return weight
    return 0.0


def post_hot_score(post: Post, now: Optional[datetime] = None) -> float:
    """Per-post score: ``likes*1.5 + replies*2 + reposts``.

    The value stored on ingest is unweighted. With *now* the score is
    scaled by :func:`freshness_multiplier` for ranking posts against each
    other.
    """
    score = post.likes * 1.5 + post.replies * 2 + post.reposts
    if now is not None:
        score *= freshness_multiplier(post.age_hours(now))
    return score


def distinct_authors(posts: Iterable[Post]) -> int:
    return len({p.source_account.lower().lstrip("@") for p in posts if p.source_account})


def topic_hot_score(
    posts: List[Post],
    now: datetime,
    half_life_hours: float = DEFAULT_HALF_LIFE_HOURS,
) -> float:
    """Hot score of a topic from its member posts at time *now*.

    Args:
        posts: Member posts.
        now: Reference time for age decay.
        half_life_hours: Age at which a post contributes half its engagement.

    Returns:
        Score rounded to 4 decimals; 0.0 for an empty topic.
    """
    if not posts:
        return 0.0
    decayed = sum(
        raw_engagement(p) * decay_factor(p.age_hours(now), half_life_hours)
        for p in posts
    )
    authors = max(1, distinct_authors(posts))
    score = 10 * math.log10(1 + decayed) * (1 + math.log(authors))
    return round(score, 4)
