"""
Cascading County -> Town -> Estate selector over a PlaceIndex.

Pure logic: no I/O happens here. The web page (app.py) and the typeahead
endpoint drive a CascadingSelector per request; resolve() hands the estate
page path to the navigation callback.
"""

import logging
import math
import threading
from typing import Callable, Dict, Hashable, List, Optional, Sequence, Tuple

from rapidfuzz.distance import Levenshtein

from errors import InvalidPayload, NotFound
from places import PlaceIndex, fold_key, slugify, strip_diacritics
from review_config import ALL_AREAS, RANKING, RankingConfig

logger = logging.getLogger(__name__)

LEVELS = ("county", "town", "estate")


# =============================================================================
# Ranked free-text filter
# =============================================================================

def normalize(value: str) -> str:
    return strip_diacritics(value or "").lower()


def _alpha(value: str):
    return (fold_key(value), value)


def rank_options(
    candidates: Sequence[str],
    query: str,
    fuzzy: bool = True,
    config: RankingConfig = RANKING,
) -> List[str]:
    """Filter and order candidates against typed text.

    Tiers: prefix (0), substring (1, by match position), fuzzy (2, by edit
    distance, only within ceil(len(query) * fuzzy_ratio)). Ties break
    alphabetically. An empty query returns everything, sorted.
    """
    q = normalize(query).strip()
    if not q:
        return sorted(candidates, key=_alpha)

    max_distance = math.ceil(len(q) * config.fuzzy_ratio)
    ranked: List[Tuple[int, int, Tuple[str, str], str]] = []
    for item in candidates:
        n = normalize(item)
        pos = n.find(q)
        if pos == 0:
            ranked.append((0, 0, _alpha(item), item))
        elif pos > 0:
            ranked.append((1, pos, _alpha(item), item))
        elif fuzzy:
            distance = Levenshtein.distance(q[:config.query_cap], n[:config.candidate_cap])
            if distance <= max_distance:
                ranked.append((2, distance, _alpha(item), item))
    ranked.sort(key=lambda r: r[:3])
    return [r[3] for r in ranked]


def build_path(county: str, town: str, estate: str) -> str:
    """Estate page path: /{county}/{town}/{estate} as slugs."""
    return f"/{slugify(county)}/{slugify(town)}/{slugify(estate)}"


# =============================================================================
# Selector state
# =============================================================================

class CascadingSelector:
    """Three dependent pickers. Changing a parent clears its children."""

    def __init__(self, index: PlaceIndex, on_navigate: Optional[Callable[[str], None]] = None):
        self.index = index
        self.on_navigate = on_navigate
        self._county: Optional[str] = None
        self._town: Optional[str] = None
        self._estate: Optional[str] = None

    @property
    def county(self) -> Optional[str]:
        return self._county

    @property
    def town(self) -> Optional[str]:
        return self._town

    @property
    def estate(self) -> Optional[str]:
        return self._estate

    @property
    def town_enabled(self) -> bool:
        return self._county is not None

    @property
    def estate_enabled(self) -> bool:
        return self._town is not None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def select_county(self, value: Optional[str]) -> None:
        self._town = None
        self._estate = None
        if not value:
            self._county = None
            return
        resolved = self.index.resolve_county(value)
        if resolved is None:
            self._county = None
            raise NotFound(f"Unknown county: {value}")
        self._county = resolved

    def select_town(self, value: Optional[str]) -> None:
        if not self.town_enabled:
            raise InvalidPayload({"town": "Pick a county first."})
        self._estate = None
        if not value:
            self._town = None
            return
        resolved = self.index.resolve_town(self._county, value)
        if resolved is None:
            self._town = None
            raise NotFound(f"Unknown town in {self._county}: {value}")
        self._town = resolved

    def select_estate(self, value: Optional[str]) -> None:
        if not self.estate_enabled:
            raise InvalidPayload({"estate": "Pick a town first."})
        if not value:
            self._estate = None
            return
        resolved = self.index.resolve_estate(self._county, self._town, value)
        if resolved is None:
            self._estate = None
            raise NotFound(f"Unknown estate in {self._town}: {value}")
        self._estate = resolved

    def clear(self) -> None:
        self._county = self._town = self._estate = None

    def apply(self, county: Optional[str], town: Optional[str] = None, estate: Optional[str] = None) -> None:
        """Best-effort restore from request params; stops at the first level that doesn't resolve."""
        try:
            self.select_county(county)
            if county and town:
                self.select_town(town)
            if county and town and estate:
                self.select_estate(estate)
        except NotFound as e:
            logger.info("Selection stopped: %s", e.message)

    # ------------------------------------------------------------------
    # Options
    # ------------------------------------------------------------------

    def options(self, level: str) -> List[str]:
        if level == "county":
            return self.index.counties()
        if level == "town":
            return self.index.towns(self._county) if self._county else []
        if level == "estate":
            if not self._town:
                return []
            return self.index.estates(self._county, self._town)
        raise InvalidPayload({"level": f"Must be one of {', '.join(LEVELS)}."})

    def filter_options(self, level: str, query: str) -> List[str]:
        return rank_options(self.options(level), query)

    def option_counts(self, level: str) -> Dict[str, int]:
        """Estate counts shown next to county/town options."""
        if level == "county":
            return self.index.estate_counts()
        if level == "town" and self._county:
            return self.index.town_counts(self._county)
        return {}

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    @property
    def effective_estate(self) -> Optional[str]:
        if self._estate:
            return self._estate
        if self._town is None:
            return None
        estates = self.index.estates(self._county, self._town)
        if not estates or estates == [ALL_AREAS]:
            return ALL_AREAS
        return None

    @property
    def is_complete(self) -> bool:
        return self.effective_estate is not None

    @property
    def summary(self) -> str:
        if not self.is_complete:
            return ""
        return f"{self.effective_estate}, {self._town}, {self._county}"

    def resolve(self) -> Optional[str]:
        """Emit the estate page path once all three levels are known."""
        estate = self.effective_estate
        if estate is None:
            return None
        path = build_path(self._county, self._town, estate)
        if self.on_navigate is not None:
            self.on_navigate(path)
        return path


# =============================================================================
# Stale-response guard
# =============================================================================

class LatestRequestGate:
    """Discards results of requests superseded by a newer one.

    Each call to issue() returns a ticket. A result is applied only while
    its ticket is still the latest issued for the gate, so an earlier
    request that resolves late can never overwrite a newer one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._latest = 0
        self._key: Optional[Hashable] = None

    def issue(self, key: Hashable = None) -> int:
        with self._lock:
            self._latest += 1
            self._key = key
            return self._latest

    def is_current(self, ticket: int) -> bool:
        with self._lock:
            return ticket == self._latest

    @property
    def current_key(self) -> Optional[Hashable]:
        return self._key

    def deliver(self, ticket: int, apply: Callable[[], None]) -> bool:
        """Run apply() only if ticket is current. Returns whether it ran."""
        with self._lock:
            if ticket != self._latest:
                logger.debug("Discarding stale response (ticket %d < %d)", ticket, self._latest)
                return False
        apply()
        return True
