"""
Tests for fact matching and contradiction detection.
"""

from __future__ import annotations

from typing import Any

import pytest

from dde.facts.current import compute_current_facts
from dde.facts.keys import are_parent_child, category_for_key, is_numeric_key
from dde.facts.matching import (
    classify_delta,
    compare_source_priority,
    detect_contradiction,
    extract_numeric,
    find_related_fact,
    get_source_priority,
    get_sources_by_priority,
    match_fact,
    match_facts_batch,
    relative_delta,
    should_persist,
    values_equal,
)
from dde.types import (
    ContradictionSignificance,
    CurrentFact,
    ExtractedFact,
    FactCategory,
    FactEvent,
    FactEventType,
    FactSource,
    MatchType,
)


def make_fact(
    fact_key: str = "financial.arr",
    value: Any = 500_000,
    source: FactSource = FactSource.PITCH_DECK,
    display_value: str | None = None,
    confidence: int = 80,
) -> ExtractedFact:
    """Create a test fact."""
    return ExtractedFact(
        fact_key=fact_key,
        value=value,
        display_value=display_value if display_value is not None else str(value),
        source=source,
        source_confidence=confidence,
    )


def current_view(*facts: ExtractedFact) -> list[CurrentFact]:
    """Current view holding each fact as a freshly created key."""
    events = [
        FactEvent.create("deal_test", f, FactEventType.CREATED, "test") for f in facts
    ]
    return compute_current_facts(events)


class TestSourcePriority:
    """Test source ranking."""

    def test_priorities(self) -> None:
        """Test the documented priority values."""
        assert get_source_priority(FactSource.DATA_ROOM) == 100
        assert get_source_priority(FactSource.BA_OVERRIDE) == 100
        assert get_source_priority(FactSource.FINANCIAL_MODEL) == 95
        assert get_source_priority(FactSource.FOUNDER_RESPONSE) == 90
        assert get_source_priority(FactSource.PITCH_DECK) == 80
        assert get_source_priority(FactSource.CONTEXT_ENGINE) == 60

    def test_unknown_source_ranks_lowest(self) -> None:
        """Test that an unknown source string ranks 0."""
        assert get_source_priority("RUMOUR") == 0

    def test_compare(self) -> None:
        """Test pairwise comparison."""
        assert compare_source_priority(FactSource.DATA_ROOM, FactSource.PITCH_DECK) > 0
        assert compare_source_priority(FactSource.CONTEXT_ENGINE, FactSource.PITCH_DECK) < 0
        assert compare_source_priority(FactSource.DATA_ROOM, FactSource.BA_OVERRIDE) == 0

    def test_sources_by_priority(self) -> None:
        """Test ordering of all sources."""
        ordered = get_sources_by_priority()
        assert set(ordered[:2]) == {FactSource.DATA_ROOM, FactSource.BA_OVERRIDE}
        assert ordered[-1] is FactSource.CONTEXT_ENGINE
        assert len(ordered) == len(FactSource)


class TestNumericExtraction:
    """Test numeric readings of fact values."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (535_000, 535_000.0),
            (0.42, 0.42),
            ("€1.2M", 1_200_000.0),
            ("500K€", 500_000.0),
            ("45%", 45.0),
            ("1,250,000", 1_250_000.0),
            ({"amount": 12}, 12.0),
            ({"value": "3k"}, 3_000.0),
        ],
    )
    def test_numeric_values(self, value: Any, expected: float) -> None:
        """Test values that have a numeric reading."""
        assert extract_numeric(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", [None, True, False, "Paris", [1, 2], {"name": "x"}])
    def test_non_numeric_values(self, value: Any) -> None:
        """Test values without a numeric reading."""
        assert extract_numeric(value) is None

    def test_hint_disables_string_parsing(self) -> None:
        """Test that a known non-numeric key keeps strings textual."""
        assert extract_numeric("12", numeric_hint=False) is None
        assert extract_numeric(12, numeric_hint=False) == 12.0


class TestContradictionDetection:
    """Test contradiction classification."""

    def test_relative_delta(self) -> None:
        """Test relative change, including a zero baseline."""
        assert relative_delta(100, 110) == pytest.approx(0.10)
        assert relative_delta(-100, -50) == pytest.approx(0.5)
        assert relative_delta(0, 0) == 0.0
        assert relative_delta(0, 5) == 1.0

    @pytest.mark.parametrize(
        "delta,expected",
        [
            (0.0, None),
            (0.049, None),
            (0.05, ContradictionSignificance.MINOR),
            (0.149, ContradictionSignificance.MINOR),
            (0.15, ContradictionSignificance.SIGNIFICANT),
            (0.30, ContradictionSignificance.SIGNIFICANT),
            (0.31, ContradictionSignificance.MAJOR),
        ],
    )
    def test_classify_delta(self, delta: float, expected: ContradictionSignificance | None) -> None:
        """Test threshold boundaries."""
        assert classify_delta(delta) is expected

    def test_small_numeric_change_is_not_contradiction(self) -> None:
        """Test that a change under 5% is not a contradiction."""
        assert detect_contradiction("financial.arr", 500_000, 510_000) is None

    def test_minor_numeric_change(self) -> None:
        """Test a 7% change."""
        info = detect_contradiction("financial.arr", 500_000, 535_000)

        assert info is not None
        assert info.significance is ContradictionSignificance.MINOR
        assert info.delta == pytest.approx(0.07)
        assert info.numeric

    def test_major_numeric_change_across_formats(self) -> None:
        """Test comparison of a number and a formatted string."""
        info = detect_contradiction("financial.arr", 500_000, "€1.2M")

        assert info is not None
        assert info.significance is ContradictionSignificance.MAJOR

    def test_text_values(self) -> None:
        """Test that differing text is a minor contradiction and equal text none."""
        assert detect_contradiction("team.ceo.name", "Ana Ruiz", " ana ruiz ") is None

        info = detect_contradiction("team.ceo.name", "Ana Ruiz", "Marc Vidal")
        assert info is not None
        assert info.significance is ContradictionSignificance.MINOR
        assert not info.numeric

    def test_boolean_values(self) -> None:
        """Test that booleans are compared by identity, not numerically."""
        assert detect_contradiction("legal.pending_litigation", False, False) is None
        info = detect_contradiction("legal.pending_litigation", False, True)
        assert info is not None
        assert info.significance is ContradictionSignificance.MINOR

    def test_values_equal(self) -> None:
        """Test loose equality."""
        assert values_equal(" Paris", "paris")
        assert values_equal([1, 2], [1, 2])
        assert values_equal({"a": 1, "b": 2}, {"b": 2, "a": 1})
        assert not values_equal(True, 1)
        assert not values_equal([1, 2], [2, 1])


class TestKeyRelations:
    """Test dotted key relations."""

    def test_parent_child(self) -> None:
        """Test strict segment-wise prefixes."""
        assert are_parent_child("team.competitors_exist", "team.competitors_exist.competitors")
        assert are_parent_child("team.ceo.name", "team.ceo")
        assert not are_parent_child("team.ceo", "team.cto")
        assert not are_parent_child("team.ceo", "team.ceo")
        assert not are_parent_child("team.ceo", "team.ceos.name")

    def test_single_segment_keys_never_relate(self) -> None:
        """Test that category names are not parents."""
        assert not are_parent_child("financial", "financial.arr")

    def test_category_for_key(self) -> None:
        """Test category lookup and fallback."""
        assert category_for_key("financial.arr") is FactCategory.FINANCIAL
        assert category_for_key("legal.some_new_key") is FactCategory.LEGAL
        assert category_for_key("custom.thing") is FactCategory.OTHER

    def test_numeric_key_hint(self) -> None:
        """Test taxonomy type hints."""
        assert is_numeric_key("financial.arr") is True
        assert is_numeric_key("team.ceo.name") is False
        assert is_numeric_key("custom.thing") is None

    def test_find_related_prefers_closest(self) -> None:
        """Test that the nearest relative by depth wins."""
        view = current_view(
            make_fact("team.founders", 2, FactSource.DATA_ROOM),
            make_fact("team.founders.ceo", "Ana", FactSource.DATA_ROOM),
        )

        related = find_related_fact("team.founders.ceo.name", view)
        assert related is not None
        assert related.fact_key == "team.founders.ceo"

    def test_find_related_none(self) -> None:
        """Test that unrelated keys give no match."""
        view = current_view(make_fact("financial.arr", 1, FactSource.DATA_ROOM))
        assert find_related_fact("financial.mrr", view) is None


class TestMatchFact:
    """Test the matching decision table."""

    def test_new_key(self) -> None:
        """Test that an unseen key is NEW."""
        outcome = match_fact(make_fact(), [])

        assert outcome.type is MatchType.NEW
        assert outcome.existing is None

    def test_higher_priority_supersedes(self) -> None:
        """Test the data room overriding a pitch deck figure."""
        view = current_view(make_fact(value=500_000, source=FactSource.PITCH_DECK))
        outcome = match_fact(make_fact(value=535_000, source=FactSource.DATA_ROOM), view)

        assert outcome.type is MatchType.SUPERSEDE
        assert outcome.contradiction is not None
        assert outcome.contradiction.significance is ContradictionSignificance.MINOR

    def test_lower_priority_ignored(self) -> None:
        """Test that a weaker source does not replace a stronger one."""
        view = current_view(make_fact(value=500_000, source=FactSource.DATA_ROOM))
        outcome = match_fact(make_fact(value=520_000, source=FactSource.CONTEXT_ENGINE), view)

        assert outcome.type is MatchType.IGNORE
        assert not should_persist(outcome)

    def test_same_priority_most_recent_wins(self) -> None:
        """Test that equal sources supersede."""
        view = current_view(make_fact(value=500_000, source=FactSource.PITCH_DECK))
        outcome = match_fact(make_fact(value=520_000, source=FactSource.PITCH_DECK), view)

        assert outcome.type is MatchType.SUPERSEDE

    def test_major_contradiction_needs_review_regardless_of_source(self) -> None:
        """Test that a >30% change goes to review even from a stronger source."""
        view = current_view(make_fact(value=500_000, source=FactSource.PITCH_DECK))
        outcome = match_fact(make_fact(value=900_000, source=FactSource.DATA_ROOM), view)

        assert outcome.type is MatchType.REVIEW_NEEDED
        assert not outcome.fuzzy
        assert "Major contradiction" in outcome.reason

    def test_human_override_supersedes_within_threshold(self) -> None:
        """Test that a BA override wins over an equal-priority source."""
        view = current_view(make_fact(value=500_000, source=FactSource.DATA_ROOM))
        outcome = match_fact(make_fact(value=600_000, source=FactSource.BA_OVERRIDE), view)

        assert outcome.type is MatchType.SUPERSEDE
        assert outcome.reason == "Human override"

    def test_human_override_major_change_needs_review(self) -> None:
        """Test that a >30% change from a BA override still goes to review."""
        view = current_view(make_fact(value=500_000, source=FactSource.DATA_ROOM))
        outcome = match_fact(make_fact(value=2_000_000, source=FactSource.BA_OVERRIDE), view)

        assert outcome.type is MatchType.REVIEW_NEEDED
        assert "Major contradiction" in outcome.reason

    def test_parent_child_needs_review(self) -> None:
        """Test that a related key is always sent to review."""
        view = current_view(
            make_fact("team.competitors_exist", False, FactSource.FOUNDER_RESPONSE)
        )
        outcome = match_fact(
            make_fact(
                "team.competitors_exist.competitors",
                ["Alpha", "Beta"],
                FactSource.CONTEXT_ENGINE,
            ),
            view,
        )

        assert outcome.type is MatchType.REVIEW_NEEDED
        assert outcome.fuzzy
        assert outcome.existing is not None
        assert outcome.existing.fact_key == "team.competitors_exist"

    def test_accepts_mapping_view(self) -> None:
        """Test that a key -> fact mapping is accepted."""
        view = {f.fact_key: f for f in current_view(make_fact())}
        outcome = match_fact(make_fact(value=500_000, source=FactSource.DATA_ROOM), view)

        assert outcome.type is MatchType.SUPERSEDE


class TestBatchMatching:
    """Test matching several facts against one view."""

    def test_grouping(self) -> None:
        """Test that outcomes are grouped by type."""
        view = current_view(
            make_fact("financial.arr", 500_000, FactSource.PITCH_DECK),
            make_fact("financial.burn_rate", 40_000, FactSource.DATA_ROOM),
        )
        result = match_facts_batch(
            [
                make_fact("financial.arr", 530_000, FactSource.DATA_ROOM),
                make_fact("financial.burn_rate", 41_000, FactSource.PITCH_DECK),
                make_fact("team.size", 12, FactSource.PITCH_DECK),
                make_fact("financial.arr", 5_000_000, FactSource.FINANCIAL_MODEL),
            ],
            view,
        )

        assert len(result.to_supersede) == 1
        assert len(result.to_ignore) == 1
        assert len(result.new) == 1
        assert len(result.needs_review) == 1
        assert len(result.outcomes) == 4
        assert len(result.contradictions) == 2
