"""
Topic clustering with TF-IDF cosine similarity.

Posts and topics are compared as TF-IDF vectors fitted over the current
batch (candidate posts plus the keyword bags of existing topics). A post
joins the most similar topic at or above the threshold, otherwise it seeds
a new topic. Processing order is fixed (post time, then thread id) and ties
go to the earlier topic, so the same inputs always produce the same
assignment.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

import numpy as np
from sklearn.feature_extraction import DictVectorizer
from sklearn.feature_extraction.text import TfidfTransformer
from sklearn.metrics.pairwise import cosine_similarity

from trendpress.models import Post, Topic

DEFAULT_SIMILARITY_THRESHOLD = 0.25
DEFAULT_MAX_KEYWORDS = 25

STOP_WORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all", "any", "can",
    "had", "her", "was", "one", "our", "out", "has", "have", "been", "will",
    "with", "this", "that", "from", "they", "were", "said", "each", "which",
    "their", "there", "what", "about", "would", "make", "like", "just",
    "over", "such", "take", "than", "them", "very", "some", "could", "into",
    "other", "then", "these", "also", "more", "your", "when", "its", "how",
    "who", "his", "she", "may", "new", "now", "way", "use", "get", "got",
    "did", "does", "doing", "being", "here", "only", "most", "much", "why",
    "where", "while", "should", "after", "before", "because", "really",
    "http", "https", "www", "com", "thread", "threads",
})

_NON_WORD = re.compile(r"[^\w\s]", re.UNICODE)


def tokenize(text: str) -> List[str]:
    """Lowercase, strip punctuation, drop short tokens and stop words."""
    words = _NON_WORD.sub(" ", text.lower()).split()
    return [w for w in words if len(w) > 2 and w not in STOP_WORDS]


class TermSpace:
    """TF-IDF space fitted on a batch of term-count bags.

    IDF is the smoothed ``ln((1 + N) / (1 + df)) + 1`` and rows are
    L2-normalised. Terms outside the fitted vocabulary are ignored.
    """

    def __init__(self, bags: Sequence[Dict[str, int]]) -> None:
        self.vectorizer = DictVectorizer()
        counts = self.vectorizer.fit_transform(list(bags))
        self.transformer = TfidfTransformer(smooth_idf=True)
        # check_array refuses a zero-feature matrix
        self.is_empty = counts.shape[1] == 0
        if not self.is_empty:
            self.transformer.fit(counts)

    def idf(self, term: str) -> float:
        return float(self.transformer.idf_[self.vectorizer.vocabulary_[term]])

    def vectors(self, bags: Sequence[Dict[str, int]]):
        return self.transformer.transform(self.vectorizer.transform(list(bags)))

    def similarities(self, bag: Dict[str, int], others: Sequence[Dict[str, int]]) -> np.ndarray:
        """Cosine similarity of *bag* against each of *others*."""
        if self.is_empty or not others:
            return np.zeros(len(others))
        return cosine_similarity(self.vectors([bag]), self.vectors(others))[0]

    def pairwise(self, bags: Sequence[Dict[str, int]]) -> np.ndarray:
        if self.is_empty:
            return np.zeros((len(bags), len(bags)))
        return cosine_similarity(self.vectors(bags))


def top_keywords(term_counts: Dict[str, int], limit: int = DEFAULT_MAX_KEYWORDS) -> Dict[str, int]:
    """Keep the *limit* most frequent terms (count desc, then term asc)."""
    ranked = sorted(term_counts.items(), key=lambda item: (-item[1], item[0]))
    return dict(ranked[:limit])


def topic_label(keywords: Dict[str, int], fallback: str) -> str:
    """Short human label: top three keywords, else the first words of *fallback*."""
    terms = list(top_keywords(keywords, 3))
    if terms:
        return " ".join(terms)
    return " ".join(fallback.split()[:8])[:80]


# =============================================================================
# INCREMENTAL ASSIGNMENT
# =============================================================================


@dataclass
class ClusterAssignment:
    """Outcome of one clustering pass.

    Attributes:
        topics: Every topic touched in this pass (updated or new), in
            creation order.
        new_topic_ids: Ids of topics seeded in this pass.
        assignments: Post id -> topic id.
    """

    topics: List[Topic] = field(default_factory=list)
    new_topic_ids: List[str] = field(default_factory=list)
    assignments: Dict[str, str] = field(default_factory=dict)


class TopicClusterer:
    """Assigns unclustered posts to existing or new topics.

    Args:
        similarity_threshold: Minimum cosine similarity to join a topic.
        max_keywords: Size cap of each topic's keyword bag.
    """

    def __init__(
        self,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        max_keywords: int = DEFAULT_MAX_KEYWORDS,
    ) -> None:
        self.similarity_threshold = similarity_threshold
        self.max_keywords = max_keywords

    def assign(self, posts: List[Post], topics: List[Topic]) -> ClusterAssignment:
        """Assign *posts* to *topics*, seeding new topics as needed.

        Topics in *topics* are mutated in place (post ids, keywords,
        counts). Posts must all belong to the topics' workspace.
        """
        ordered = sorted(posts, key=lambda p: (p.reference_time, p.thread_id))
        post_terms = {p.id: dict(Counter(tokenize(p.content))) for p in ordered}
        result = ClusterAssignment()
        if not ordered:
            return result

        space = TermSpace(list(post_terms.values()) + [t.keywords for t in topics])
        pool: List[Topic] = list(topics)
        touched: Dict[str, Topic] = {}

        for post in ordered:
            terms = post_terms[post.id]
            scores = space.similarities(terms, [t.keywords for t in pool])
            # argmax keeps the first of equal scores, the earlier topic
            index = int(np.argmax(scores)) if pool else -1
            if index >= 0 and scores[index] > 0 and scores[index] >= self.similarity_threshold:
                best = pool[index]
            else:
                best = Topic(
                    workspace_id=post.workspace_id,
                    label=topic_label(terms, post.content),
                )
                pool.append(best)
                result.new_topic_ids.append(best.id)

            merged = Counter(best.keywords)
            merged.update(terms)
            best.keywords = top_keywords(dict(merged), self.max_keywords)
            if post.id not in best.post_ids:
                best.post_ids.append(post.id)
            best.post_count = len(best.post_ids)
            touched[best.id] = best
            result.assignments[post.id] = best.id

        result.topics = [t for t in pool if t.id in touched]
        return result


# =============================================================================
# ONE-SHOT BATCH CLUSTERING
# =============================================================================


@dataclass
class DocumentCluster:
    doc_ids: List[str]
    terms: List[str]


def cluster_documents(
    documents: Sequence[Tuple[str, str]],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> List[DocumentCluster]:
    """Greedy clustering of ``(id, text)`` pairs, independent of stored topics.

    Documents with more terms seed clusters first (ties by id). Each seed
    absorbs every unassigned document whose similarity to it is at or
    above *threshold*. Nothing is persisted; used for previews.

    Returns:
        Clusters in seed order, each with its five most frequent terms.
    """
    if not documents:
        return []

    term_counts = [Counter(tokenize(text)) for _, text in documents]
    bags = [dict(counts) for counts in term_counts]
    similarity = TermSpace(bags).pairwise(bags)
    order = sorted(
        range(len(documents)),
        key=lambda i: (-sum(term_counts[i].values()), documents[i][0]),
    )

    clusters: List[DocumentCluster] = []
    assigned = set()
    for seed in order:
        if seed in assigned:
            continue
        members = [seed]
        assigned.add(seed)
        for other in order:
            if other in assigned:
                continue
            if similarity[seed, other] >= threshold:
                members.append(other)
                assigned.add(other)

        bag: Counter = Counter()
        for index in members:
            bag.update(term_counts[index])
        clusters.append(
            DocumentCluster(
                doc_ids=[documents[index][0] for index in members],
                terms=list(top_keywords(dict(bag), 5)),
            )
        )
    return clusters
