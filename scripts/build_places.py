#!/usr/bin/env python3
"""
Build data/places.csv from a base town table plus OSM estates.

Data sources:
  - Base towns: any CSV whose county/town columns can be detected
    (CSO built-up areas export, or a plain county,town list)
  - OSM estates: suburb/neighbourhood/quarter places and named residential
    landuse inside each town, via Overpass (--overpass)
  - Custom estates: optional county,town,estate CSV merged last

Every town gets an "All Areas" row. Rows are deduplicated on lowercase
(county, town, estate) and written sorted as
county,town,estate,lat,lng,source,notes.

Usage:
    python scripts/build_places.py --towns data/cso_bua_2022.csv
    python scripts/build_places.py --towns towns.csv --overpass --only-counties Dublin,Kildare
    python scripts/build_places.py --towns towns.csv --overpass --max-towns 20
"""

import argparse
import csv
import logging
import os
import sys
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from overpass_http import OverpassQueryError, OverpassRateLimitError, overpass_query
from places import canonical_county, detect_columns, fold_key
from review_config import ALL_AREAS

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)

OUTPUT_COLUMNS = ["county", "town", "estate", "lat", "lng", "source", "notes"]
DEFAULT_SLEEP_MS = int(os.environ.get("SLEEP_MS", 1500))


def _row(county, town, estate, lat="", lng="", source="", notes="") -> Dict[str, str]:
    return {
        "county": county, "town": town, "estate": estate,
        "lat": lat, "lng": lng, "source": source, "notes": notes,
    }


def _dedupe_key(row: Dict[str, str]) -> Tuple[str, str, str]:
    return (row["county"].lower(), row["town"].lower(), row["estate"].lower())


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

def read_towns(path: str) -> List[Tuple[str, str]]:
    """Unique (county, town) pairs from a base table, sorted."""
    with open(path, encoding="utf-8") as fh:
        rows = list(csv.reader(fh.read().lstrip("\ufeff").splitlines()))
    if not rows:
        return []
    columns = detect_columns(rows[0])
    if not columns:
        logger.error("No county/town columns found in %s (header: %s)", path, rows[0])
        return []

    seen = set()
    towns = []
    for raw in rows[1:]:
        def cell(name):
            idx = columns.get(name)
            return raw[idx].strip() if idx is not None and idx < len(raw) else ""

        county = canonical_county(cell("county"))
        town = cell("town")
        if not county or not town:
            continue
        key = (county.lower(), town.lower())
        if key in seen:
            continue
        seen.add(key)
        towns.append((county, town))
    return sorted(towns, key=lambda t: (t[0].lower(), t[1].lower()))


def filter_towns(towns: List[Tuple[str, str]], only_counties: Iterable[str] = (),
                 max_towns: int = 0) -> List[Tuple[str, str]]:
    wanted = {fold_key(canonical_county(c)) for c in only_counties if c.strip()}
    if wanted:
        towns = [t for t in towns if fold_key(t[0]) in wanted]
    if max_towns > 0:
        towns = towns[:max_towns]
    return towns


def read_custom_estates(path: Optional[str]) -> List[Dict[str, str]]:
    """county,town,estate rows; missing file means no custom estates."""
    if not path or not os.path.exists(path):
        return []
    out = []
    with open(path, encoding="utf-8") as fh:
        for raw in csv.DictReader(fh):
            lowered = {(k or "").strip().lower(): (v or "").strip() for k, v in raw.items()}
            county = canonical_county(lowered.get("county", ""))
            town = lowered.get("town", "")
            estate = lowered.get("estate", "")
            if county and town and estate:
                out.append(_row(county, town, estate, source="CUSTOM"))
    return out


# ---------------------------------------------------------------------------
# Overpass
# ---------------------------------------------------------------------------

def overpass_ql(town: str, county: str) -> str:
    """Estates inside the geocoded town area."""
    return (
        "[out:json][timeout:60];\n"
        f"{{{{geocodeArea:{town}, {county}, Ireland}}}}->.town;\n"
        "(\n"
        '  nwr["place"~"suburb|neighbourhood|quarter"](area.town);\n'
        '  nwr["landuse"="residential"]["name"](area.town);\n'
        ");\n"
        "out center tags;"
    )


def estates_from_overpass(data: dict, town: str, county: str) -> List[Dict[str, str]]:
    """Named elements as estate rows. The town's own name is skipped."""
    rows = []
    seen = set()
    for element in (data or {}).get("elements") or []:
        name = ((element.get("tags") or {}).get("name") or "").strip()
        if not name or name.lower() == town.lower():
            continue
        name = " ".join(name.replace(",", " ").split())
        if name.lower() in seen:
            continue
        seen.add(name.lower())

        lat, lng = element.get("lat"), element.get("lon")
        if lat is None and element.get("center"):
            lat, lng = element["center"].get("lat"), element["center"].get("lon")
        rows.append(_row(
            county, town, name,
            lat="" if lat is None else str(lat),
            lng="" if lng is None else str(lng),
            source="OSM",
        ))
    return sorted(rows, key=lambda r: r["estate"].lower())


def _fetch_overpass(town: str, county: str) -> dict:
    return overpass_query(overpass_ql(town, county), caller=f"build_places:{town}")


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------

def build_rows(
    towns: List[Tuple[str, str]],
    custom: Iterable[Dict[str, str]] = (),
    fetch: Optional[Callable[[str, str], dict]] = None,
    sleep_ms: int = DEFAULT_SLEEP_MS,
    sleep: Callable[[float], None] = time.sleep,
) -> List[Dict[str, str]]:
    """All Areas baseline, then OSM estates (when fetch is given), then custom rows."""
    rows = []
    seen = set()

    def add(row):
        key = _dedupe_key(row)
        if key in seen:
            return False
        seen.add(key)
        rows.append(row)
        return True

    for county, town in towns:
        add(_row(county, town, ALL_AREAS, source="CSO"))

    if fetch is not None:
        for i, (county, town) in enumerate(towns, 1):
            try:
                estates = estates_from_overpass(fetch(town, county), town, county)
            except (OverpassQueryError, OverpassRateLimitError) as e:
                logger.warning("%s, %s: %s", town, county, e)
            else:
                added = sum(1 for row in estates if add(row))
                logger.info("%s, %s: +%d estates (%d/%d)", town, county, added, i, len(towns))
            if sleep_ms and i < len(towns):
                sleep(sleep_ms / 1000.0)

    for row in custom:
        add(row)

    return sorted(rows, key=lambda r: (r["county"].lower(), r["town"].lower(), r["estate"].lower()))


def write_csv(rows: List[Dict[str, str]], path: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=OUTPUT_COLUMNS)
        writer.writeheader()
        writer.writerows(rows)


def main(argv: Optional[List[str]] = None) -> int:
    root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    parser = argparse.ArgumentParser(description="Build the StreetSage place list")
    parser.add_argument("--towns", required=True, help="Base town table (CSV)")
    parser.add_argument("--custom", default=os.path.join(root, "data", "estates.csv"),
                        help="Custom county,town,estate CSV merged last")
    parser.add_argument("--out", default=os.path.join(root, "data", "places.csv"))
    parser.add_argument("--only-counties", default=os.environ.get("ONLY_COUNTIES", ""),
                        help="Comma-separated county filter")
    parser.add_argument("--max-towns", type=int, default=int(os.environ.get("MAX_TOWNS", 0)))
    parser.add_argument("--overpass", action="store_true", help="Query OSM for estates per town")
    parser.add_argument("--sleep-ms", type=int, default=DEFAULT_SLEEP_MS,
                        help="Delay between Overpass towns")
    args = parser.parse_args(argv)

    try:
        towns = read_towns(args.towns)
    except OSError as e:
        logger.error("Cannot read %s: %s", args.towns, e)
        return 1
    towns = filter_towns(towns, args.only_counties.split(","), args.max_towns)
    logger.info("Towns to process: %d", len(towns))

    fetch = None
    if args.overpass:
        from models import init_db
        init_db()
        fetch = _fetch_overpass

    rows = build_rows(towns, read_custom_estates(args.custom), fetch=fetch, sleep_ms=args.sleep_ms)
    write_csv(rows, args.out)
    logger.info("Wrote %d rows to %s", len(rows), args.out)
    return 0


if __name__ == "__main__":
    sys.exit(main())
