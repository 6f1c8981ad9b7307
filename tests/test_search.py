"""Tests for hybrid search: fuzzy matching, query intent, ranking and fallbacks."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from linkvault.core.embedding_providers import EmbeddingError, LocalHashProvider, local_embedding
from linkvault.core.models import Folder, Link, Note, StoredChunk, Tag
from linkvault.core.search import (
    SearchConfig,
    SearchResult,
    combine_scores,
    expand_with_synonyms,
    fuzzy_similarity,
    get_search_insights,
    get_search_suggestions,
    highlight_matches,
    hybrid_search,
    keyword_search,
    parse_query_intent,
    search_with_fallback,
    tokenize,
)

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_note(id, title="", content="", days_ago=1, **kwargs):
    return Note(id=id, owner_id="u1", title=title, content=content, created_at=NOW - timedelta(days=days_ago), **kwargs)


def make_link(id, name="", url="https://example.com", days_ago=1, **kwargs):
    return Link(id=id, owner_id="u1", url=url, name=name, created_at=NOW - timedelta(days=days_ago), **kwargs)


def search(query, links=(), notes=(), folders=(), tags=(), **kwargs):
    return hybrid_search(query, list(links), list(notes), list(folders), list(tags), now=NOW, **kwargs)


class FailingProvider(LocalHashProvider):
    async def embed(self, texts):
        raise EmbeddingError("service unavailable", provider="local", retriable=True)


class TestFuzzySimilarity:
    def test_exact_prefix_and_substring(self):
        assert fuzzy_similarity("search", "search") == 1.0
        assert fuzzy_similarity("Search", "search engines") == 0.95
        assert fuzzy_similarity("gine", "search engines") == 0.9

    def test_typo_is_tolerated(self):
        assert fuzzy_similarity("serch", "search") > 0.5
        assert fuzzy_similarity("serch", "Search engines compared") > 0.5

    def test_unrelated_words(self):
        assert fuzzy_similarity("banana", "search") == pytest.approx(0.0)

    def test_empty_input(self):
        assert fuzzy_similarity("", "text") == 0.0
        assert fuzzy_similarity("query", "") == 0.0

    def test_short_words_do_not_match_inside_query(self):
        assert fuzzy_similarity("python", "go on") == 0.0


def test_edit_distance_scoring():
    # one edit against a six-letter word
    assert fuzzy_similarity("serch", "search") == pytest.approx((1 - 1 / 6) * 0.7)
    # token fallback allows a third of the shorter token in edits
    assert fuzzy_similarity("databse migrations", "database upgrades") == pytest.approx(0.5 * 0.7 * 0.6)


def test_tokenize_drops_punctuation_and_single_chars():
    assert tokenize("Hello, World! A b-c") == ["hello", "world"]


class TestSynonyms:
    def test_key_expands_to_values(self):
        expanded = expand_with_synonyms(["video"])
        assert "youtube" in expanded
        assert expanded[0] == "video"

    def test_value_expands_to_key_and_siblings(self):
        expanded = expand_with_synonyms(["tutorial"])
        assert "learn" in expanded
        assert "course" in expanded

    def test_unknown_word_is_kept(self):
        assert expand_with_synonyms(["sourdough"]) == ["sourdough"]


class TestQueryIntent:
    def test_plain_query(self):
        intent = parse_query_intent("async python", now=NOW)
        assert intent.kind == "search"
        assert intent.search_terms == ["async", "python"]
        assert intent.has_filters is False

    def test_type_and_date(self):
        intent = parse_query_intent("notes from last week", now=NOW)

        assert intent.item_type == "note"
        assert intent.kind == "filter_type"
        assert intent.date_range == (datetime(2024, 3, 1, tzinfo=timezone.utc), NOW)
        assert intent.folder is None
        assert intent.search_terms == []

    def test_today_starts_at_midnight(self):
        intent = parse_query_intent("today", now=NOW)
        assert intent.date_range[0] == datetime(2024, 3, 15, tzinfo=timezone.utc)
        assert intent.kind == "filter_date"

    def test_quoted_folder(self):
        intent = parse_query_intent('design ideas in "Work Stuff"', now=NOW)
        assert intent.folder == "Work Stuff"
        assert intent.kind == "filter_folder"
        assert intent.search_terms == ["design", "ideas"]

    def test_bare_folder(self):
        intent = parse_query_intent("from work python", now=NOW)
        assert intent.folder == "work"
        assert intent.search_terms == ["python"]

    def test_tags(self):
        assert parse_query_intent("#python tips", now=NOW).tag == "python"
        assert parse_query_intent("#python tips", now=NOW).search_terms == ["tips"]
        assert parse_query_intent("tagged rust", now=NOW).tag == "rust"

    def test_type_wins_over_tag(self):
        intent = parse_query_intent("#python links", now=NOW)
        assert intent.kind == "filter_type"
        assert intent.tag == "python"
        assert intent.item_type == "link"


class TestKeywordRanking:
    def test_title_hit_ranks_above_content_hit(self):
        guide = make_note("n1", "Python asyncio guide", "How to write async code.")
        recipe = make_note("n2", "Cooking", "A recipe that mentions python once.")
        bread = make_note("n3", "Banana bread", "Mix flour and bananas.")

        results = search("python", notes=[bread, recipe, guide])

        assert [r.item.id for r in results] == ["n1", "n2"]
        assert results[0].keyword_score == pytest.approx(0.95)
        assert results[1].keyword_score == pytest.approx(0.72)
        assert results[0].matches[0].field == "title"
        assert results[0].combined_score == results[0].keyword_score

    def test_typo_finds_title(self):
        note = make_note("n1", "Search engines compared")
        results = search("serch", notes=[note, make_note("n2", "Banana")])
        assert [r.item.id for r in results] == ["n1"]

    def test_synonym_match(self):
        course = make_note("n1", "Python course")
        results = search("tutorial", notes=[course, make_note("n2", "Grocery list")])
        assert [r.item.id for r in results] == ["n1"]

    def test_link_fields(self):
        link = make_link("l1", url="https://docs.python.org", metadata={"title": "Python documentation"})
        results = search("documentation", links=[link])

        assert len(results) == 1
        assert results[0].type == "link"
        assert "metadata" in [m.field for m in results[0].matches]

    def test_empty_query(self):
        assert search("   ", notes=[make_note("n1", "Anything")]) == []

    def test_keyword_search_ignores_embeddings(self):
        note = make_note("n1", "Gardening basics", embedding=[0.0, 1.0, 0.0, 0.0])
        results = keyword_search("gardening", [], [note], [], [], now=NOW)
        assert results[0].semantic_score == 0.0
        assert results[0].combined_score == pytest.approx(0.95)


class TestFilters:
    def test_folder_filter(self):
        folders = [Folder("f1", "u1", "Work"), Folder("f2", "u1", "Personal")]
        work = make_note("n1", "Quarterly report", folder_id="f1")
        home = make_note("n2", "Quarterly taxes", folder_id="f2")

        results = search('quarterly in "Work"', notes=[work, home], folders=folders)
        assert [r.item.id for r in results] == ["n1"]

    def test_tag_filter(self):
        tags = [Tag("t1", "u1", "python"), Tag("t2", "u1", "rust")]
        py = make_link("l1", "Packaging guide", tag_ids=["t1"])
        rs = make_link("l2", "Packaging guide for crates", tag_ids=["t2"])

        results = search("#python packaging", links=[py, rs], tags=tags)
        assert [r.item.id for r in results] == ["l1"]

    def test_type_filter(self):
        link = make_link("l1", "Packaging guide")
        note = make_note("n1", "Packaging guide")

        results = search("packaging links", links=[link], notes=[note])
        assert [r.type for r in results] == ["link"]

    def test_filter_only_query_returns_every_survivor(self):
        fresh = make_note("n1", "Fresh", days_ago=0)
        stale = make_note("n2", "Stale", days_ago=3)

        results = search("yesterday", notes=[fresh, stale])

        assert [r.item.id for r in results] == ["n1"]
        assert results[0].keyword_score == 1.0
        assert results[0].matches[0].kind == "filter"

    def test_filters_combine(self):
        folders = [Folder("f1", "u1", "Work")]
        recent = make_note("n1", "Plan", folder_id="f1", days_ago=2)
        old = make_note("n2", "Plan", folder_id="f1", days_ago=40)
        elsewhere = make_note("n3", "Plan", days_ago=2)

        results = search("notes from Work this week", notes=[recent, old, elsewhere], folders=folders)
        assert [r.item.id for r in results] == ["n1"]


class TestHybridScoring:
    def test_semantic_only_match_surfaces(self):
        lexical = make_note("n1", "Gardening basics", embedding=[0.0, 1.0, 0.0, 0.0])
        semantic = make_note("n2", "Soil and compost", embedding=[1.0, 0.0, 0.0, 0.0])

        results = search("gardening", notes=[lexical, semantic], query_embedding=[1.0, 0.0, 0.0, 0.0])

        assert [r.item.id for r in results] == ["n2", "n1"]
        assert results[0].keyword_score == 0.0
        assert results[0].combined_score == pytest.approx(0.6)
        assert results[1].combined_score == pytest.approx(0.95 * 0.4)

    def test_combined_score_grows_with_semantic_score(self):
        config = SearchConfig()
        scores = [combine_scores(0.5, s, config) for s in (0.0, 0.3, 0.6, 1.0)]
        assert scores == sorted(scores)
        assert combine_scores(1.0, 1.0, config) == pytest.approx(1.0)

    def test_chunk_match_carries_excerpt(self):
        chunk = StoredChunk(
            id=1, parent_type="note", parent_id="n1", index=2, text="x" * 150, embedding=[1.0, 0.0, 0.0, 0.0]
        )
        note = make_note("n1", "Unrelated title", chunks=[chunk])

        results = search("gardening", notes=[note], query_embedding=[1.0, 0.0, 0.0, 0.0])

        chunk_matches = [m for m in results[0].matches if m.field == "chunk"]
        assert chunk_matches[0].chunk_index == 2
        assert chunk_matches[0].highlight == "x" * 100 + "..."

    def test_falls_back_without_stored_embeddings(self):
        note = make_note("n1", "Gardening basics")
        results = search("gardening", notes=[note], query_embedding=[1.0, 0.0, 0.0, 0.0])
        assert results[0].combined_score == pytest.approx(0.95)

    def test_falls_back_when_semantic_scoring_fails(self):
        note = make_note("n1", "Gardening basics", embedding=[1.0, 0.0, 0.0, 0.0])

        with patch("linkvault.core.search.semantic_score_for", side_effect=RuntimeError("bad vector")):
            results = search("gardening", notes=[note], query_embedding=[1.0, 0.0, 0.0, 0.0])

        assert results[0].combined_score == pytest.approx(0.95)
        assert results[0].semantic_score == 0.0

    def test_other_model_embeddings_are_ignored(self):
        note = make_note("n1", "Soil", embedding=[1.0, 0.0, 0.0, 0.0], embedding_model="text-embedding-3-small")

        results = search(
            "gardening", notes=[note], query_embedding=[1.0, 0.0, 0.0, 0.0], query_model="local-hash-4"
        )
        assert results == []

    def test_ties_prefer_newest_then_id(self):
        older = make_note("a-old", "Gardening", days_ago=5)
        newer = make_note("z-new", "Gardening", days_ago=1)
        twin = make_note("b-twin", "Gardening", days_ago=5)

        results = search("gardening", notes=[older, twin, newer])
        assert [r.item.id for r in results] == ["z-new", "a-old", "b-twin"]

    def test_min_score_and_top_k(self):
        notes = [make_note(f"n{i}", "Gardening basics") for i in range(5)]
        assert len(search("gardening", notes=notes, config=SearchConfig(top_k=2))) == 2
        assert search("gardening", notes=notes, config=SearchConfig(min_score=0.99)) == []

    def test_negative_weights_are_rejected(self):
        with pytest.raises(ValueError):
            SearchConfig(keyword_weight=-0.1)

    def test_result_to_dict(self):
        results = search("gardening", notes=[make_note("n1", "Gardening")])
        data = results[0].to_dict()
        assert data["type"] == "note"
        assert data["item"]["id"] == "n1"
        assert data["combined_score"] == 1.0
        assert data["matches"][0] == {"kind": "keyword", "field": "title", "score": 1.0}


class TestSearchWithFallback:
    @pytest.mark.asyncio
    async def test_embeds_query_with_provider(self):
        provider = LocalHashProvider(dimensions=64)
        note = make_note(
            "n1",
            "Weekend project",
            "Fermentation",
            embedding=local_embedding("bread baking", 64),
            embedding_model=provider.model_id,
        )

        results = await search_with_fallback("bread baking", [], [note], [], [], provider=provider, now=NOW)

        assert len(results) == 1
        assert results[0].semantic_score == pytest.approx(1.0)
        assert results[0].keyword_score == 0.0

    @pytest.mark.asyncio
    async def test_provider_failure_degrades_to_keywords(self):
        note = make_note("n1", "Gardening basics", embedding=[1.0, 0.0, 0.0, 0.0])

        results = await search_with_fallback(
            "gardening", [], [note], [], [], provider=FailingProvider(dimensions=4), now=NOW
        )

        assert results[0].combined_score == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_without_provider(self):
        note = make_note("n1", "Gardening basics", embedding=[1.0, 0.0, 0.0, 0.0])
        results = await search_with_fallback("gardening", [], [note], [], [], now=NOW)
        assert results[0].semantic_score == 0.0


class TestHelpers:
    def test_highlight_matches(self):
        assert highlight_matches("Learn Python today", "python") == [
            {"text": "Learn ", "highlight": False},
            {"text": "Python", "highlight": True},
            {"text": " today", "highlight": False},
        ]

    def test_highlight_merges_overlaps(self):
        segments = highlight_matches("pythonic", "python pythonic")
        assert segments == [{"text": "pythonic", "highlight": True}]

    def test_highlight_empty_query(self):
        assert highlight_matches("Some text", "  ") == [{"text": "Some text", "highlight": False}]

    def test_suggestions(self):
        suggestions = get_search_suggestions(
            "py",
            links=[make_link("l1", "PyCon talks")],
            notes=[make_note("n1", "Shopping")],
            folders=[Folder("f1", "u1", "Work")],
            tags=[Tag("t1", "u1", "python")],
        )
        assert suggestions == ["#python", "PyCon talks"]

    def test_suggestions_include_folders_and_dates(self):
        suggestions = get_search_suggestions("to", [], [], [Folder("f1", "u1", "Tools")], [])
        assert suggestions == ['in "Tools"', "today"]

    def test_suggestions_need_two_characters(self):
        assert get_search_suggestions("p", [], [], [], [Tag("t1", "u1", "python")]) == []

    def test_insights(self):
        note = make_note("n1", "x")
        results = [
            SearchResult("note", note, keyword_score=0.8, semantic_score=0.0, combined_score=0.8),
            SearchResult("note", note, keyword_score=0.5, semantic_score=0.7, combined_score=0.62),
            SearchResult("note", note, keyword_score=0.6, semantic_score=0.0, combined_score=0.6),
        ]

        insights = get_search_insights(results)

        assert insights["total_results"] == 3
        assert insights["keyword_matches"] == 2
        assert insights["hybrid_matches"] == 1
        assert insights["top_match_type"] == "keyword"
        assert insights["average_score"] == pytest.approx(0.6733, abs=1e-3)

    def test_insights_empty(self):
        assert get_search_insights([])["average_score"] == 0.0
