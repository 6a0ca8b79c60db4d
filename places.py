"""
Place Index: the in-memory County -> Town -> {Estate} lookup.

Built once per process from one or more place lists (simple
county,town,estate tables, census-style tables with loosely named columns,
nested JSON, or rows of the estates table) and never persisted.

Name handling: every name is reduced to a fold key (diacritics stripped,
casefolded, whitespace collapsed; counties also go through COUNTY_ALIASES),
and two spellings with the same fold key are the same node. The node keeps the
first spelling it saw as its display name.
"""

import csv
import io
import json
import logging
import os
import re
import unicodedata
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from review_config import ALL_AREAS

logger = logging.getLogger(__name__)


# =============================================================================
# Text normalisation
# =============================================================================

def strip_diacritics(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def fold_key(value: str) -> str:
    """Lookup key: no diacritics, casefolded, single spaces."""
    return " ".join(strip_diacritics(value).casefold().split())


def slugify(value: str) -> str:
    """URL segment: lowercase ascii alphanumerics joined by single hyphens."""
    ascii_text = strip_diacritics(value).lower()
    return re.sub(r"[^a-z0-9]+", "-", ascii_text).strip("-")


# County synonyms seen across CSO / OSM / hand-made lists.
COUNTY_ALIASES = {
    "londonderry": "Derry",
    "derry/londonderry": "Derry",
    "derry~londonderry": "Derry",
    "queen's county": "Laois",
    "queens county": "Laois",
    "king's county": "Offaly",
    "kings county": "Offaly",
    "tipp": "Tipperary",
}

_COUNTY_PREFIX = re.compile(r"^(?:co\.?|county)\s+", re.IGNORECASE)


def canonical_county(raw: str) -> str:
    """Display form of a county name with aliases and 'Co'/'County' prefixes removed."""
    name = " ".join((raw or "").split())
    alias = COUNTY_ALIASES.get(fold_key(name))
    if alias:
        return alias
    stripped = _COUNTY_PREFIX.sub("", name)
    return COUNTY_ALIASES.get(fold_key(stripped), stripped)


# =============================================================================
# Column detection
# =============================================================================

# Prioritised (field, patterns) rules. For each field the patterns are tried
# in order and the first column matching a pattern wins; a column claimed by
# an earlier field is never reused.
FIELD_RULES: Tuple[Tuple[str, Tuple["re.Pattern[str]", ...]], ...] = (
    ("county", tuple(re.compile(p, re.IGNORECASE) for p in (
        r"^COUNTY$",
        r"COUNTY[_ ]?NAME",
        r"COUNTY[_ ]?OR[_ ]?CITY",
        r"LOCAL[_ ]?AUTHORITY",
        r"COUNTY",
    ))),
    ("town", tuple(re.compile(p, re.IGNORECASE) for p in (
        r"^TOWN$",
        r"URBAN[_ ]?AREA[_ ]?NAME",
        r"BUA[_ ]?NAME",
        r"SETTLEMENT",
        r"URBAN[_ ]?AREA",
        r"^TOWN[_ ]?NAME$",
        r"^NAME$",
    ))),
    ("estate", tuple(re.compile(p, re.IGNORECASE) for p in (
        r"^ESTATE$",
        r"ESTATE[_ ]?NAME",
        r"NEIGHBOU?RHOOD",
        r"^AREA$",
    ))),
)


def detect_columns(header: Sequence[str]) -> Dict[str, int]:
    """Map logical fields to column indexes.

    Returns {} when either the county or the town column is missing.
    The estate column is optional.
    """
    cleaned = [(h or "").strip().lstrip("\ufeff") for h in header]
    found: Dict[str, int] = {}
    claimed = set()
    for field_name, patterns in FIELD_RULES:
        for pattern in patterns:
            idx = next(
                (i for i, h in enumerate(cleaned) if i not in claimed and pattern.search(h)),
                None,
            )
            if idx is not None:
                found[field_name] = idx
                claimed.add(idx)
                break
    if "county" not in found or "town" not in found:
        return {}
    return found


# =============================================================================
# Place Index
# =============================================================================

def _sort_key(name: str):
    return (fold_key(name), name)


class PlaceIndex:
    """County -> Town -> {Estate}, case- and accent-insensitive on lookup."""

    def __init__(self):
        self._counties: Dict[str, str] = {}
        self._towns: Dict[str, Dict[str, str]] = {}
        self._estates: Dict[Tuple[str, str], Dict[str, str]] = {}

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def add(self, county: str, town: str, estate: Optional[str] = None) -> bool:
        """Add one row. Returns False when county or town is blank."""
        county = canonical_county((county or "").strip())
        town = " ".join((town or "").split())
        estate = " ".join((estate or "").split()) or ALL_AREAS
        if not county or not town:
            return False

        ck, tk, ek = fold_key(county), fold_key(town), fold_key(estate)
        self._counties.setdefault(ck, county)
        self._towns.setdefault(ck, {}).setdefault(tk, town)
        self._estates.setdefault((ck, tk), {}).setdefault(ek, estate)
        return True

    def merge(self, other: "PlaceIndex") -> "PlaceIndex":
        for county, town, estate in other.triples():
            self.add(county, town, estate)
        return self

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def triples(self) -> Iterator[Tuple[str, str, str]]:
        for ck, county in self._counties.items():
            for tk, town in self._towns.get(ck, {}).items():
                for estate in self._estates.get((ck, tk), {}).values():
                    yield county, town, estate

    def counties(self) -> List[str]:
        return sorted(self._counties.values(), key=_sort_key)

    def towns(self, county: str) -> List[str]:
        ck = fold_key(canonical_county(county or ""))
        return sorted(self._towns.get(ck, {}).values(), key=_sort_key)

    def estates(self, county: str, town: str) -> List[str]:
        ck = fold_key(canonical_county(county or ""))
        tk = fold_key(town or "")
        return sorted(self._estates.get((ck, tk), {}).values(), key=_sort_key)

    def resolve_county(self, county: str) -> Optional[str]:
        return self._counties.get(fold_key(canonical_county(county or "")))

    def resolve_town(self, county: str, town: str) -> Optional[str]:
        ck = fold_key(canonical_county(county or ""))
        return self._towns.get(ck, {}).get(fold_key(town or ""))

    def resolve_estate(self, county: str, town: str, estate: str) -> Optional[str]:
        ck = fold_key(canonical_county(county or ""))
        tk = fold_key(town or "")
        if tk not in self._towns.get(ck, {}):
            return None
        ek = fold_key(estate or "")
        found = self._estates.get((ck, tk), {}).get(ek)
        if found is None and ek == fold_key(ALL_AREAS):
            return ALL_AREAS
        return found

    def resolve(self, county: str, town: str, estate: str) -> Optional[Tuple[str, str, str]]:
        """Display-name triple for a case/accent-insensitive match, or None."""
        c = self.resolve_county(county)
        t = self.resolve_town(county, town) if c else None
        e = self.resolve_estate(county, town, estate) if t else None
        if not (c and t and e):
            return None
        return c, t, e

    def contains(self, county: str, town: Optional[str] = None, estate: Optional[str] = None) -> bool:
        if town is None:
            return self.resolve_county(county) is not None
        if estate is None:
            return self.resolve_town(county, town) is not None
        return self.resolve_estate(county, town, estate) is not None

    def resolve_slugs(self, county_slug: str, town_slug: str, estate_slug: str) -> Optional[Tuple[str, str, str]]:
        """Map an estate-page path back to display names."""
        county = next((c for c in self.counties() if slugify(c) == county_slug), None)
        if county is None:
            return None
        town = next((t for t in self.towns(county) if slugify(t) == town_slug), None)
        if town is None:
            return None
        estate = next((e for e in self.estates(county, town) if slugify(e) == estate_slug), None)
        if estate is None and estate_slug == slugify(ALL_AREAS):
            estate = ALL_AREAS
        if estate is None:
            return None
        return county, town, estate

    def town_counts(self, county: str) -> Dict[str, int]:
        return {t: len(self.estates(county, t)) for t in self.towns(county)}

    def estate_counts(self) -> Dict[str, int]:
        return {c: sum(self.town_counts(c).values()) for c in self.counties()}

    def to_dict(self) -> Dict[str, Dict[str, List[str]]]:
        return {
            county: {town: self.estates(county, town) for town in self.towns(county)}
            for county in self.counties()
        }

    def __len__(self) -> int:
        return len(self._counties)

    def __eq__(self, other) -> bool:
        if not isinstance(other, PlaceIndex):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"PlaceIndex(counties={len(self._counties)})"


# =============================================================================
# Loaders
# =============================================================================

def _read_rows(text: str) -> List[List[str]]:
    text = (text or "").lstrip("\ufeff")
    return [row for row in csv.reader(io.StringIO(text)) if any(cell.strip() for cell in row)]


def load_csv_text(text: str, headerless: bool = False) -> PlaceIndex:
    """Parse a CSV place list.

    With a header, columns are found via FIELD_RULES. headerless=True reads
    positional county,town[,estate] rows.
    """
    index = PlaceIndex()
    rows = _read_rows(text)
    if not rows:
        return index

    if headerless:
        columns = {"county": 0, "town": 1, "estate": 2}
        body = rows
    else:
        columns = detect_columns(rows[0])
        if not columns:
            logger.warning("No county/town column found in header %s", rows[0])
            return index
        body = rows[1:]

    for row in body:
        def cell(name):
            idx = columns.get(name)
            if idx is None or idx >= len(row):
                return ""
            return row[idx].strip()

        index.add(cell("county"), cell("town"), cell("estate"))
    return index


def load_mapping_rows(rows: Iterable[Mapping[str, object]]) -> PlaceIndex:
    """Rows of dicts (JSON list, DictReader) with loosely named keys."""
    index = PlaceIndex()
    rows = list(rows)
    if not rows:
        return index
    header = [str(k) for k in rows[0].keys()]
    columns = detect_columns(header)
    if not columns:
        logger.warning("No county/town key found in %s", header)
        return index
    names = {field_name: header[idx] for field_name, idx in columns.items()}
    for row in rows:
        index.add(
            str(row.get(names["county"]) or ""),
            str(row.get(names["town"]) or ""),
            str(row.get(names["estate"]) or "") if "estate" in names else "",
        )
    return index


def load_estate_rows(rows: Iterable[Mapping[str, object]]) -> PlaceIndex:
    """Rows of the estates table: {county, town, name}."""
    index = PlaceIndex()
    for row in rows:
        index.add(str(row.get("county") or ""), str(row.get("town") or ""), str(row.get("name") or ""))
    return index


def load_json_text(text: str) -> PlaceIndex:
    """Nested {county: {town: [estate, ...]}} or a list of row objects."""
    data = json.loads(text or "{}")
    if isinstance(data, list):
        return load_mapping_rows(r for r in data if isinstance(r, dict))

    index = PlaceIndex()
    if not isinstance(data, dict):
        return index
    for county, towns in data.items():
        if not isinstance(towns, dict):
            continue
        for town, estates in towns.items():
            if not estates:
                index.add(county, town)
                continue
            for estate in estates:
                index.add(county, town, str(estate))
    return index


def load_path(path: str) -> PlaceIndex:
    """Load one file; unreadable or malformed sources yield an empty index."""
    try:
        with open(path, encoding="utf-8") as fh:
            text = fh.read()
    except OSError as e:
        logger.warning("Place source %s unreadable: %s", path, e)
        return PlaceIndex()

    if path.lower().endswith(".json"):
        try:
            return load_json_text(text)
        except json.JSONDecodeError as e:
            logger.warning("Place source %s is not valid JSON: %s", path, e)
            return PlaceIndex()
    return load_csv_text(text)


def load_sources(paths: Iterable[str], extra_rows: Iterable[Mapping[str, object]] = ()) -> PlaceIndex:
    """Union of every path plus optional estates-table rows."""
    index = PlaceIndex()
    for path in paths:
        path = path.strip()
        if not path:
            continue
        loaded = load_path(path)
        logger.info("Loaded %d counties from %s", len(loaded), os.path.basename(path))
        index.merge(loaded)
    index.merge(load_estate_rows(extra_rows))
    return index
