"""Hybrid search over links and notes.

Features: fuzzy matching with typo tolerance, synonym expansion, natural
language filters ("notes from last week", "#python", 'in "Work"') and
blending of lexical scores with embedding similarity.

The engine is pure: callers pass in the candidate items and, optionally, a
query embedding. ``search_with_fallback`` is the async entry point that
also produces the query embedding.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Union

import Levenshtein

from linkvault.core.embeddings import cosine_similarity
from linkvault.core.models import Folder, Link, Note, Tag, utcnow

if TYPE_CHECKING:
    from linkvault.core.embedding_providers import EmbeddingProvider

logger = logging.getLogger(__name__)

Item = Union[Link, Note]

# A keyword total of 1.5 (a perfect title match) maps to a score of 1.0
KEYWORD_NORMALIZER = 1.5
MIN_KEYWORD_TOTAL = 0.1
CHUNK_MATCH_THRESHOLD = 0.5
FILTER_MATCH_THRESHOLD = 0.5
HIGHLIGHT_LENGTH = 100

LINK_FIELD_WEIGHTS = {
    "name": 1.5,
    "url": 0.8,
    "description": 1.0,
    "metadata": 0.7,
    "folder": 0.6,
    "tag": 0.8,
}
NOTE_FIELD_WEIGHTS = {
    "title": 1.5,
    "content": 1.2,
    "folder": 0.6,
    "tag": 0.8,
}

SYNONYMS: dict[str, list[str]] = {
    "article": ["post", "blog", "read", "story", "news"],
    "video": ["youtube", "watch", "clip", "movie", "stream"],
    "image": ["photo", "picture", "pic", "img", "graphic"],
    "document": ["doc", "file", "pdf", "paper"],
    "code": ["programming", "coding", "developer", "dev", "github"],
    "design": ["ui", "ux", "figma", "sketch", "creative"],
    "music": ["audio", "song", "spotify", "sound"],
    "social": ["twitter", "facebook", "instagram", "linkedin"],
    "shopping": ["buy", "purchase", "store", "amazon", "shop"],
    "learn": ["tutorial", "course", "education", "study", "lesson"],
    "work": ["job", "career", "business", "professional"],
    "important": ["starred", "favorite", "saved", "bookmark"],
    "recent": ["new", "latest", "today", "yesterday"],
    "old": ["ancient", "archive", "past", "previous"],
}

DATE_PATTERNS: list[tuple[re.Pattern[str], int]] = [
    (re.compile(r"\b(?:today|now)\b", re.I), 0),
    (re.compile(r"\byesterday\b", re.I), 1),
    (re.compile(r"\bthis week\b", re.I), 7),
    (re.compile(r"\blast week\b", re.I), 14),
    (re.compile(r"\bthis month\b", re.I), 30),
    (re.compile(r"\blast month\b", re.I), 60),
    (re.compile(r"\brecent(?:ly)?\b", re.I), 7),
]
FOLDER_PATTERN = re.compile(
    r"\b(?:in|from|folder)\s+[\"']([^\"']+)[\"']|\b(?:from|folder)\s+([\w-]+)", re.I
)
TAG_PATTERN = re.compile(r"#([\w-]+)|\b(?:tagged?|with tag)\s+[\"']?([\w-]+)[\"']?", re.I)
LINK_TYPE_PATTERN = re.compile(r"\b(?:links?|urls?|websites?)\b", re.I)
NOTE_TYPE_PATTERN = re.compile(r"\b(?:notes?|memos?)\b", re.I)

_NON_WORD = re.compile(r"[^\w\s]")


# ==================== Fuzzy matching ====================


def tokenize(text: str) -> list[str]:
    """Lowercase words longer than one character, punctuation removed."""
    return [w for w in _NON_WORD.sub(" ", text.lower()).split() if len(w) > 1]


def fuzzy_similarity(query: str, text: str) -> float:
    """Similarity of ``query`` to ``text`` in [0, 1], tolerant of typos.

    Exact match 1.0, prefix 0.95, substring 0.9. Short queries (<= 10 chars)
    fall back to edit distance against the start of the text, anything else
    to token overlap.

    The edit-distance step is wider than a plain field-prefix comparison:
    the start of every word is also a candidate, so "serch" still finds
    "Search engines compared". Single-word fields score exactly as with
    the prefix alone.
    """
    if not query or not text:
        return 0.0

    q = query.lower()
    t = text.lower()

    if t == q:
        return 1.0
    if t.startswith(q):
        return 0.95
    if q in t:
        return 0.9
    if len(q) <= 10:
        best = 0.0
        for candidate in [t, *t.split()]:
            prefix = candidate[: len(q) + 2]
            best = max(best, 1 - Levenshtein.distance(q, prefix) / max(len(q), len(prefix)))
        if best > 0.6:
            return best * 0.7

    query_tokens = tokenize(q)
    if not query_tokens:
        return 0.0
    text_tokens = tokenize(t)

    matched = 0.0
    for qt in query_tokens:
        for tt in text_tokens:
            if qt in tt or (len(tt) >= 3 and tt in qt):
                matched += 1
                break
            if len(qt) >= 3 and len(tt) >= 3:
                if Levenshtein.distance(qt, tt) <= min(len(qt), len(tt)) // 3:
                    matched += 0.7
                    break

    return (matched / len(query_tokens)) * 0.6


def expand_with_synonyms(tokens: list[str]) -> list[str]:
    """Add synonyms in both directions (key -> values, value -> key and siblings)."""
    expanded = dict.fromkeys(tokens)
    for token in tokens:
        if token in SYNONYMS:
            expanded.update(dict.fromkeys(SYNONYMS[token]))
        for key, values in SYNONYMS.items():
            if token in values:
                expanded[key] = None
                expanded.update(dict.fromkeys(values))
    return list(expanded)


def calculate_field_score(query: str, expanded_tokens: list[str], value: str | None) -> float:
    if not value:
        return 0.0

    direct = fuzzy_similarity(query, value)
    if direct > 0.5:
        return direct

    if not expanded_tokens:
        return 0.0
    field_tokens = tokenize(value)
    matches = 0.0
    for qt in expanded_tokens:
        for ft in field_tokens:
            similarity = fuzzy_similarity(qt, ft)
            if similarity > 0.6:
                matches += similarity
                break

    return (matches / len(expanded_tokens)) * 0.8


# ==================== Query intent ====================


@dataclass
class QueryIntent:
    """Structured reading of a free-text query.

    ``kind`` names the strongest filter found (type > tag > folder > date);
    every filter that was found is applied.
    """

    kind: str = "search"
    value: str | None = None
    date_range: tuple[datetime, datetime] | None = None
    search_terms: list[str] = field(default_factory=list)
    folder: str | None = None
    tag: str | None = None
    item_type: str | None = None

    @property
    def has_filters(self) -> bool:
        return bool(self.folder or self.tag or self.item_type or self.date_range)


def _strip(text: str, match: re.Match[str]) -> str:
    return f"{text[: match.start()]} {text[match.end():]}"


def parse_query_intent(query: str, now: datetime | None = None) -> QueryIntent:
    now = now or utcnow()
    intent = QueryIntent()
    remaining = query.strip()

    for pattern, days in DATE_PATTERNS:
        match = pattern.search(remaining)
        if match:
            start = (now - timedelta(days=days)).replace(hour=0, minute=0, second=0, microsecond=0)
            intent.date_range = (start, now)
            intent.kind = "filter_date"
            remaining = _strip(remaining, match)
            break

    match = FOLDER_PATTERN.search(remaining)
    if match:
        intent.folder = (match.group(1) or match.group(2)).strip()
        intent.kind, intent.value = "filter_folder", intent.folder
        remaining = _strip(remaining, match)

    match = TAG_PATTERN.search(remaining)
    if match:
        intent.tag = (match.group(1) or match.group(2)).strip()
        intent.kind, intent.value = "filter_tag", intent.tag
        remaining = _strip(remaining, match)

    if LINK_TYPE_PATTERN.search(remaining):
        intent.item_type = "link"
    elif NOTE_TYPE_PATTERN.search(remaining):
        intent.item_type = "note"
    if intent.item_type:
        intent.kind, intent.value = "filter_type", intent.item_type
        remaining = NOTE_TYPE_PATTERN.sub(" ", LINK_TYPE_PATTERN.sub(" ", remaining))

    intent.search_terms = tokenize(remaining.replace('"', " ").replace("'", " "))
    return intent


# ==================== Results ====================


@dataclass
class SearchConfig:
    keyword_weight: float = 0.4
    semantic_weight: float = 0.6
    min_score: float = 0.1
    top_k: int = 20

    def __post_init__(self) -> None:
        if self.keyword_weight < 0 or self.semantic_weight < 0:
            raise ValueError("Search weights must be non-negative")


@dataclass
class SearchMatch:
    kind: str  # keyword | semantic | filter
    field: str
    score: float
    chunk_index: int | None = None
    highlight: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "field": self.field, "score": round(self.score, 4)}
        if self.chunk_index is not None:
            data["chunk_index"] = self.chunk_index
        if self.highlight is not None:
            data["highlight"] = self.highlight
        return data


@dataclass
class SearchResult:
    type: str
    item: Item
    keyword_score: float
    semantic_score: float
    combined_score: float
    matches: list[SearchMatch] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "item": self.item.to_dict(),
            "keyword_score": round(self.keyword_score, 4),
            "semantic_score": round(self.semantic_score, 4),
            "combined_score": round(self.combined_score, 4),
            "matches": [m.to_dict() for m in self.matches],
        }


def combine_scores(keyword_score: float, semantic_score: float, config: SearchConfig) -> float:
    return keyword_score * config.keyword_weight + semantic_score * config.semantic_weight


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def rank_results(results: list[SearchResult], top_k: int) -> list[SearchResult]:
    """Best first; equal scores put the newest item first, then order by id."""
    ordered = sorted(
        results,
        key=lambda r: (-r.combined_score, -_aware(r.item.created_at).timestamp(), r.item.id),
    )
    return ordered[:top_k]


# ==================== Scoring ====================


def _item_fields(
    item: Item, item_type: str, folder_map: dict[str, Folder], tag_map: dict[str, Tag]
) -> list[tuple[str, float, list[str]]]:
    folder = folder_map.get(item.folder_id) if item.folder_id else None
    folder_names = [folder.name] if folder else []
    tag_names = [tag_map[tid].name for tid in item.tag_ids if tid in tag_map]

    if item_type == "link":
        meta = item.metadata or {}
        return [
            ("name", LINK_FIELD_WEIGHTS["name"], [item.name]),
            ("url", LINK_FIELD_WEIGHTS["url"], [item.url]),
            ("description", LINK_FIELD_WEIGHTS["description"], [item.description]),
            (
                "metadata",
                LINK_FIELD_WEIGHTS["metadata"],
                [v for v in (meta.get("title"), meta.get("description"), meta.get("siteName")) if v],
            ),
            ("folder", LINK_FIELD_WEIGHTS["folder"], folder_names),
            ("tag", LINK_FIELD_WEIGHTS["tag"], tag_names),
        ]
    return [
        ("title", NOTE_FIELD_WEIGHTS["title"], [item.title]),
        ("content", NOTE_FIELD_WEIGHTS["content"], [item.content]),
        ("folder", NOTE_FIELD_WEIGHTS["folder"], folder_names),
        ("tag", NOTE_FIELD_WEIGHTS["tag"], tag_names),
    ]


def keyword_score_for(
    item: Item,
    item_type: str,
    lexical_query: str,
    expanded_tokens: list[str],
    folder_map: dict[str, Folder],
    tag_map: dict[str, Tag],
) -> tuple[float, list[SearchMatch]]:
    """Weighted lexical score in [0, 1] plus the fields that matched."""
    total = 0.0
    matches: list[SearchMatch] = []
    for name, weight, values in _item_fields(item, item_type, folder_map, tag_map):
        for value in values:
            score = calculate_field_score(lexical_query, expanded_tokens, value)
            if score > 0:
                total += score * weight
                matches.append(SearchMatch(kind="keyword", field=name, score=score))
                break

    if total <= MIN_KEYWORD_TOTAL:
        return 0.0, []
    return max(0.0, min(1.0, total / KEYWORD_NORMALIZER)), matches


def semantic_score_for(
    item: Item, query_embedding: list[float], query_model: str | None = None
) -> tuple[float, list[SearchMatch]]:
    """Best cosine similarity over the item's aggregate and chunk embeddings.

    Items embedded by a different model than the query score 0.
    """
    if query_model and item.embedding_model and item.embedding_model != query_model:
        return 0.0, []

    best = 0.0
    matches: list[SearchMatch] = []
    if item.embedding:
        similarity = cosine_similarity(query_embedding, item.embedding)
        if similarity > best:
            best = similarity
            matches.append(SearchMatch(kind="semantic", field="content", score=similarity))

    for chunk in item.chunks:
        if not chunk.embedding:
            continue
        similarity = cosine_similarity(query_embedding, chunk.embedding)
        if similarity > CHUNK_MATCH_THRESHOLD:
            matches.append(
                SearchMatch(
                    kind="semantic",
                    field="chunk",
                    score=similarity,
                    chunk_index=chunk.index,
                    highlight=chunk.text[:HIGHLIGHT_LENGTH] + "...",
                )
            )
        best = max(best, similarity)

    return max(0.0, best), matches


def has_embeddings(item: Item) -> bool:
    return bool(item.embedding) or any(c.embedding for c in item.chunks)


def _passes_filters(
    item: Item, item_type: str, intent: QueryIntent, folder_map: dict[str, Folder], tag_map: dict[str, Tag]
) -> bool:
    if intent.item_type and item_type != intent.item_type:
        return False

    if intent.folder:
        folder = folder_map.get(item.folder_id) if item.folder_id else None
        if folder is None or fuzzy_similarity(intent.folder, folder.name) < FILTER_MATCH_THRESHOLD:
            return False

    if intent.tag:
        if not any(
            tid in tag_map and fuzzy_similarity(intent.tag, tag_map[tid].name) >= FILTER_MATCH_THRESHOLD
            for tid in item.tag_ids
        ):
            return False

    if intent.date_range:
        start, end = intent.date_range
        if not _aware(start) <= _aware(item.created_at) <= _aware(end):
            return False

    return True


def hybrid_search(
    query: str,
    links: list[Link],
    notes: list[Note],
    folders: list[Folder],
    tags: list[Tag],
    query_embedding: list[float] | None = None,
    config: SearchConfig | None = None,
    query_model: str | None = None,
    now: datetime | None = None,
) -> list[SearchResult]:
    """Rank links and notes against a query.

    ``combined = keyword * keyword_weight + semantic * semantic_weight``.
    Without a query embedding, without any stored embedding among the
    candidates, or when semantic scoring fails, ``combined`` is the
    keyword score alone.
    """
    config = config or SearchConfig()
    if not query or not query.strip():
        return []

    intent = parse_query_intent(query, now)
    lexical_query = " ".join(intent.search_terms)
    expanded = expand_with_synonyms(intent.search_terms)
    if not expanded and not intent.has_filters:
        return []

    folder_map = {f.id: f for f in folders}
    tag_map = {t.id: t for t in tags}

    scored: list[tuple[str, Item, float, list[SearchMatch]]] = []
    candidates: list[tuple[str, Item]] = [("link", link) for link in links] + [("note", note) for note in notes]
    for item_type, item in candidates:
        if not _passes_filters(item, item_type, intent, folder_map, tag_map):
            continue
        if expanded:
            kw, matches = keyword_score_for(item, item_type, lexical_query, expanded, folder_map, tag_map)
        else:
            # Filter-only query: every survivor is a full lexical match
            kw, matches = 1.0, [SearchMatch(kind="filter", field=intent.kind, score=1.0)]
        scored.append((item_type, item, kw, matches))

    semantic: list[tuple[float, list[SearchMatch]]] = []
    use_semantic = query_embedding is not None and any(has_embeddings(item) for _, item, _, _ in scored)
    if use_semantic:
        try:
            semantic = [semantic_score_for(item, query_embedding, query_model) for _, item, _, _ in scored]
        except Exception:
            logger.warning("Semantic scoring failed, using keyword scores only", exc_info=True)
            use_semantic = False

    results = []
    for index, (item_type, item, kw, matches) in enumerate(scored):
        if use_semantic:
            sem, semantic_matches = semantic[index]
            combined = combine_scores(kw, sem, config)
            matches = matches + semantic_matches
        else:
            sem, combined = 0.0, kw

        if combined < config.min_score:
            continue
        results.append(
            SearchResult(
                type=item_type,
                item=item,
                keyword_score=kw,
                semantic_score=sem,
                combined_score=combined,
                matches=matches,
            )
        )

    return rank_results(results, config.top_k)


def keyword_search(
    query: str,
    links: list[Link],
    notes: list[Note],
    folders: list[Folder],
    tags: list[Tag],
    config: SearchConfig | None = None,
    now: datetime | None = None,
) -> list[SearchResult]:
    """Lexical-only search; never touches embeddings."""
    return hybrid_search(query, links, notes, folders, tags, query_embedding=None, config=config, now=now)


async def search_with_fallback(
    query: str,
    links: list[Link],
    notes: list[Note],
    folders: list[Folder],
    tags: list[Tag],
    provider: EmbeddingProvider | None = None,
    config: SearchConfig | None = None,
    now: datetime | None = None,
) -> list[SearchResult]:
    """Hybrid search that embeds the query itself.

    Degrades to keyword search when no candidate has embeddings, no
    provider is given, or embedding the query fails.
    """
    from linkvault.core.embedding_providers import EmbeddingError

    query_embedding = None
    query_model = None
    candidates: list[Item] = [*links, *notes]
    if provider is not None and query.strip() and any(has_embeddings(item) for item in candidates):
        terms = parse_query_intent(query, now).search_terms
        try:
            result = await provider.embed_single(" ".join(terms) or query)
        except EmbeddingError as e:
            logger.warning(f"Query embedding failed, falling back to keyword search: {e}")
            result = None
        if result is not None:
            query_embedding, query_model = result.embedding, result.model

    return hybrid_search(
        query,
        links,
        notes,
        folders,
        tags,
        query_embedding=query_embedding,
        config=config,
        query_model=query_model,
        now=now,
    )


# ==================== Helpers for the UI ====================


def highlight_matches(text: str, query: str) -> list[dict[str, Any]]:
    """Split ``text`` into segments flagged by whether they match a query token."""
    if not query.strip() or not text:
        return [{"text": text, "highlight": False}]

    lower = text.lower()
    spans: list[list[int]] = []
    for token in tokenize(query):
        start = lower.find(token)
        while start != -1:
            spans.append([start, start + len(token)])
            start = lower.find(token, start + 1)

    spans.sort()
    merged: list[list[int]] = []
    for span in spans:
        if merged and span[0] <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], span[1])
        else:
            merged.append(span)

    segments: list[dict[str, Any]] = []
    last = 0
    for start, end in merged:
        if start > last:
            segments.append({"text": text[last:start], "highlight": False})
        segments.append({"text": text[start:end], "highlight": True})
        last = end
    if last < len(text):
        segments.append({"text": text[last:], "highlight": False})
    return segments or [{"text": text, "highlight": False}]


def get_search_suggestions(
    partial_query: str,
    links: list[Link],
    notes: list[Note],
    folders: list[Folder],
    tags: list[Tag],
    limit: int = 8,
) -> list[str]:
    """Completions drawn from folder, tag, link and note names plus date phrases."""
    q = partial_query.strip().lower()
    if len(q) < 2:
        return []

    suggestions: dict[str, None] = {}
    for folder in folders:
        if q in folder.name.lower():
            suggestions[f'in "{folder.name}"'] = None
    for tag in tags:
        if q in tag.name.lower():
            suggestions[f"#{tag.name}"] = None
    for link in links:
        if link.name and q in link.name.lower():
            suggestions[link.name] = None
    for note in notes:
        if note.title and q in note.title.lower():
            suggestions[note.title] = None

    for phrase, suggestion in (
        ("recent", "recent links"),
        ("today", "today"),
        ("yesterday", "yesterday"),
        ("this week", "this week"),
    ):
        if q in phrase:
            suggestions[suggestion] = None

    return list(suggestions)[:limit]


def get_search_insights(results: list[SearchResult]) -> dict[str, Any]:
    """Summarize how a result set was matched (keyword, semantic or both)."""
    keyword = semantic = hybrid = 0
    total = 0.0
    for result in results:
        if result.keyword_score > 0 and result.semantic_score > 0:
            hybrid += 1
        elif result.keyword_score > 0:
            keyword += 1
        elif result.semantic_score > 0:
            semantic += 1
        total += result.combined_score

    if semantic > keyword:
        top = "hybrid" if hybrid > semantic else "semantic"
    else:
        top = "hybrid" if hybrid > keyword else "keyword"

    return {
        "total_results": len(results),
        "keyword_matches": keyword,
        "semantic_matches": semantic,
        "hybrid_matches": hybrid,
        "average_score": total / len(results) if results else 0.0,
        "top_match_type": top,
    }
