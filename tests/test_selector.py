"""Unit tests for selector.py — cascading pickers, ranked filter, stale-response gate."""

import pytest

from errors import InvalidPayload, NotFound
from places import PlaceIndex
from review_config import ALL_AREAS
from selector import CascadingSelector, LatestRequestGate, build_path, rank_options


@pytest.fixture()
def index():
    idx = PlaceIndex()
    idx.add("Kildare", "Celbridge", "The Grove")
    idx.add("Kildare", "Celbridge", "Castletown")
    idx.add("Kildare", "Naas")
    idx.add("Dublin", "Dublin 8", "Rialto")
    idx.add("Dublin", "Swords", "Ridgewood")
    return idx


# =========================================================================
# rank_options
# =========================================================================

class TestRankOptions:
    def test_empty_query_returns_everything_sorted(self):
        assert rank_options(["naas", "Celbridge", "Athy"], "  ") == ["Athy", "Celbridge", "naas"]

    def test_prefix_matches_first_alphabetically(self):
        result = rank_options(["Clane", "Celbridge", "Naas", "Castletown"], "c")
        assert result == ["Castletown", "Celbridge", "Clane"]

    def test_prefix_before_substring(self):
        result = rank_options(["Oldtown", "Townparks", "Castletown"], "town")
        assert result == ["Townparks", "Oldtown", "Castletown"]

    def test_substring_ordered_by_position(self):
        result = rank_options(["Castletown", "Oldtown"], "town")
        assert result == ["Oldtown", "Castletown"]

    def test_fuzzy_within_threshold(self):
        assert rank_options(["Celbridge", "Naas", "Leixlip"], "Celbrdge") == ["Celbridge"]

    def test_fuzzy_ordered_by_distance(self):
        assert rank_options(["Naul", "Naas"], "naaz") == ["Naas", "Naul"]

    def test_fuzzy_can_be_disabled(self):
        assert rank_options(["Celbridge"], "Celbrdge", fuzzy=False) == []

    def test_accents_ignored(self):
        assert rank_options(["Dún Laoghaire", "Dundrum"], "dun l") == ["Dún Laoghaire"]

    def test_unrelated_candidates_excluded(self):
        assert rank_options(["Ballincollig", "Douglas"], "swords") == []


class TestBuildPath:
    def test_slugs_each_segment(self):
        assert build_path("Dublin", "Dublin 8", "The Coombe") == "/dublin/dublin-8/the-coombe"

    def test_all_areas(self):
        assert build_path("Kildare", "Naas", ALL_AREAS) == "/kildare/naas/all-areas"


# =========================================================================
# CascadingSelector
# =========================================================================

class TestCascadingSelector:
    def test_initial_state(self, index):
        selector = CascadingSelector(index)
        assert selector.county is None
        assert not selector.town_enabled
        assert not selector.estate_enabled
        assert selector.options("county") == ["Dublin", "Kildare"]
        assert selector.options("town") == []

    def test_changing_county_clears_children(self, index):
        selector = CascadingSelector(index)
        selector.select_county("Kildare")
        selector.select_town("Celbridge")
        selector.select_estate("The Grove")
        selector.select_county("Dublin")
        assert selector.town is None
        assert selector.estate is None
        assert not selector.estate_enabled

    def test_changing_town_clears_estate(self, index):
        selector = CascadingSelector(index)
        selector.select_county("Kildare")
        selector.select_town("Celbridge")
        selector.select_estate("Castletown")
        selector.select_town("Naas")
        assert selector.estate is None

    def test_case_insensitive_selection_uses_display_names(self, index):
        selector = CascadingSelector(index)
        selector.select_county("kildare")
        selector.select_town("CELBRIDGE")
        assert (selector.county, selector.town) == ("Kildare", "Celbridge")

    def test_unknown_value_raises_not_found(self, index):
        selector = CascadingSelector(index)
        with pytest.raises(NotFound):
            selector.select_county("Atlantis")
        selector.select_county("Kildare")
        with pytest.raises(NotFound):
            selector.select_town("Swords")

    def test_child_without_parent_rejected(self, index):
        selector = CascadingSelector(index)
        with pytest.raises(InvalidPayload):
            selector.select_town("Celbridge")
        selector.select_county("Kildare")
        with pytest.raises(InvalidPayload):
            selector.select_estate("The Grove")

    def test_options_follow_selection(self, index):
        selector = CascadingSelector(index)
        selector.select_county("Kildare")
        assert selector.options("town") == ["Celbridge", "Naas"]
        selector.select_town("Celbridge")
        assert selector.options("estate") == ["Castletown", "The Grove"]

    def test_bad_level(self, index):
        with pytest.raises(InvalidPayload):
            CascadingSelector(index).options("street")

    def test_resolve_full_selection_navigates(self, index):
        visited = []
        selector = CascadingSelector(index, on_navigate=visited.append)
        selector.select_county("Dublin")
        selector.select_town("Dublin 8")
        selector.select_estate("Rialto")
        assert selector.resolve() == "/dublin/dublin-8/rialto"
        assert visited == ["/dublin/dublin-8/rialto"]
        assert selector.summary == "Rialto, Dublin 8, Dublin"

    def test_town_without_estates_defaults_to_all_areas(self, index):
        visited = []
        selector = CascadingSelector(index, on_navigate=visited.append)
        selector.select_county("Kildare")
        selector.select_town("Naas")
        assert selector.effective_estate == ALL_AREAS
        assert selector.resolve() == "/kildare/naas/all-areas"
        assert visited == ["/kildare/naas/all-areas"]

    def test_incomplete_selection_does_not_navigate(self, index):
        visited = []
        selector = CascadingSelector(index, on_navigate=visited.append)
        selector.select_county("Kildare")
        selector.select_town("Celbridge")
        assert selector.resolve() is None
        assert visited == []
        assert not selector.is_complete

    def test_apply_stops_at_first_unknown_level(self, index):
        selector = CascadingSelector(index)
        selector.apply("Kildare", "Maynooth", "Anything")
        assert selector.county == "Kildare"
        assert selector.town is None

    def test_filter_options_and_counts(self, index):
        selector = CascadingSelector(index)
        selector.select_county("Kildare")
        assert selector.filter_options("town", "na") == ["Naas"]
        assert selector.option_counts("town") == {"Celbridge": 2, "Naas": 1}
        assert selector.option_counts("county") == {"Dublin": 2, "Kildare": 3}


# =========================================================================
# LatestRequestGate
# =========================================================================

class TestLatestRequestGate:
    def test_latest_ticket_applies(self):
        gate = LatestRequestGate()
        applied = []
        ticket = gate.issue("Kildare")
        assert gate.deliver(ticket, lambda: applied.append("Kildare"))
        assert applied == ["Kildare"]

    def test_stale_response_discarded(self):
        gate = LatestRequestGate()
        applied = []
        first = gate.issue("Kildare")
        second = gate.issue("Dublin")
        # First request resolves after the second one was issued
        assert not gate.deliver(first, lambda: applied.append("Kildare"))
        assert gate.deliver(second, lambda: applied.append("Dublin"))
        assert applied == ["Dublin"]
        assert gate.current_key == "Dublin"
