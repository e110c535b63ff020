#!/usr/bin/env python3
"""
coord_parse.py — OCR-tolerant coordinate extraction from Brazilian survey text (memoriais descritivos)

WHAT THIS MODULE DOES
- Repairs OCR-garbled numbers ("7.186.725,466", "69371O,O72") into canonical decimals.
- Finds labeled projected pairs: E=/N= (either order), Este (X)/Norte (Y), X=/Y= (either order),
  plus "V001  693718,072  7186725,466" vertex-table rows.
- Finds geographic pairs with six independent layouts (DMS rows, hemisphere-lettered DMS,
  named decimals, labeled decimal pairs, unlabeled DMS pairs, symbol-less DMS).
- Finds azimuth + distance traverse segments (absolute azimuths and quadrant bearings).

RULES
- Every extractor is a pure function text -> list; nothing here prints or touches the filesystem.
- A number that cannot be repaired is dropped together with its pair; it is never read as zero.
- Hemisphere letters go through one table (N, S, E/L = east, W/O = west) everywhere.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union


# -----------------------------
# Hemisphere letters
# -----------------------------
# Portuguese documents write "L" (leste) for east and "O" (oeste) for west.
HEMISPHERES: Dict[str, str] = {
    "N": "N",
    "S": "S",
    "E": "E",
    "L": "E",
    "W": "W",
    "O": "W",
}
HEMI_LETTERS = "NSEWLO"

def canon_hemisphere(letter: Optional[str]) -> Optional[str]:
    if not letter:
        return None
    return HEMISPHERES.get(letter.strip().upper())

def hemisphere_axis(letter: Optional[str]) -> Optional[str]:
    h = canon_hemisphere(letter)
    if h in ("N", "S"):
        return "lat"
    if h in ("E", "W"):
        return "lon"
    return None


# -----------------------------
# Numeric normalizer
# -----------------------------
DIGIT_FIX = str.maketrans({"O": "0", "o": "0", "l": "1", "I": "1"})

# A numeric run as it appears in OCR text: digits, OCR look-alikes, and separators or
# blanks only when another digit follows.
NUM = r"\d(?:[0-9OolI]|[.,](?=[0-9OolI])|[ \t\u00a0](?=\d))*"

_CANON_NUMBER_RE = re.compile(r"[+-]?\d+(?:\.\d+)?")

def normalize_number(raw: str) -> str:
    """
    Canonicalize a raw numeric substring.

    - drops NBSP, blanks and tabs
    - O/o -> 0, l/I -> 1
    - both ',' and '.' present: the later one is the decimal mark, the other kind is dropped
    - only ',' present: the last comma is the decimal mark

    Locale-independent. Input that no rule applies to comes back unchanged.
    """
    if not raw:
        return raw
    v = re.sub(r"[\s\t\u00a0]+", "", raw)
    v = v.translate(DIGIT_FIX)

    has_comma = "," in v
    has_dot = "." in v
    if has_comma and has_dot:
        if v.rfind(",") > v.rfind("."):
            head, _, tail = v.rpartition(",")
        else:
            head, _, tail = v.rpartition(".")
        v = head.replace(",", "").replace(".", "") + "." + tail
    elif has_comma:
        head, _, tail = v.rpartition(",")
        v = head.replace(",", "") + "." + tail
    return v

def to_float(raw: Optional[str]) -> Optional[float]:
    """Decimal value of a raw numeric substring, or None when it cannot be repaired into a finite number."""
    if raw is None:
        return None
    v = normalize_number(raw.strip())
    if not _CANON_NUMBER_RE.fullmatch(v or ""):
        return None
    x = float(v)
    if not math.isfinite(x):
        return None
    return x


# -----------------------------
# Coordinate pairs
# -----------------------------
@dataclass(frozen=True)
class ProjectedPair:
    easting: float
    northing: float
    origin: str
    pos: int = 0

@dataclass(frozen=True)
class GeoPair:
    latitude: float
    longitude: float
    origin: str = "LatLon"
    pos: int = 0

CoordinatePair = Union[ProjectedPair, GeoPair]

def _pair_re(first: str, second: str) -> "re.Pattern[str]":
    return re.compile(
        rf"(?<![A-Za-z]){first}\s*[=:]?\s*(?P<a>{NUM})"
        rf"(?:\s*m(?![A-Za-z]))?\.?\s*[;,]?\s*(?:e\s+)?"
        rf"(?<![A-Za-z]){second}\s*[=:]?\s*(?P<b>{NUM})"
    )

E_LABEL = r"(?:E|(?i:este)(?:\s*\(\s*X\s*\))?)"
N_LABEL = r"(?:N|(?i:norte)(?:\s*\(\s*Y\s*\))?)"

EN_RE = _pair_re(E_LABEL, N_LABEL)
NE_RE = _pair_re(N_LABEL, E_LABEL)
XY_RE = _pair_re("X", "Y")
YX_RE = _pair_re("Y", "X")

VERTEX_ROW_RE = re.compile(
    r"(?m)^[ \t]*(?P<id>[A-Z]{1,3}[-\s]?\d{1,4}[A-Z]?)[ \t;|]+"
    r"(?P<e>\d{5,7}[.,]\d{1,4})[ \t;|]+(?P<n>\d{6,8}[.,]\d{1,4})\b"
)

def _collect_pairs(text: str, patterns: List[Tuple["re.Pattern[str]", str, bool]]) -> List[ProjectedPair]:
    found: List[Tuple[int, int, ProjectedPair]] = []
    for rx, origin, east_first in patterns:
        for m in rx.finditer(text):
            a = to_float(m.group("a"))
            b = to_float(m.group("b"))
            if a is None or b is None:
                continue
            e, n = (a, b) if east_first else (b, a)
            found.append((m.start(), m.end(), ProjectedPair(e, n, origin, m.start())))

    found.sort(key=lambda t: t[0])
    out: List[ProjectedPair] = []
    last_end = -1
    for start, end, pair in found:
        if start < last_end:
            continue
        out.append(pair)
        last_end = end
    return out

def extract_en_pairs(text: str) -> List[ProjectedPair]:
    """Labeled Easting/Northing pairs, either order, in document order."""
    return _collect_pairs(text or "", [(EN_RE, "EN_text", True), (NE_RE, "NE_text", False)])

def extract_xy_pairs(text: str) -> List[ProjectedPair]:
    """Labeled X/Y pairs (X = easting, Y = northing), either order, in document order."""
    return _collect_pairs(text or "", [(XY_RE, "XY", True), (YX_RE, "YX", False)])

def extract_vertex_rows(text: str) -> List[ProjectedPair]:
    out: List[ProjectedPair] = []
    for m in VERTEX_ROW_RE.finditer(text or ""):
        e = to_float(m.group("e"))
        n = to_float(m.group("n"))
        if e is None or n is None:
            continue
        out.append(ProjectedPair(e, n, "table", m.start()))
    return out

def parse_projected_vertices(text: str) -> List[ProjectedPair]:
    """
    Baseline structured parser: labeled E/N pairs, falling back to vertex-table rows
    when the labels give fewer than three points.
    """
    pairs = extract_en_pairs(text)
    if len(pairs) < 3:
        rows = extract_vertex_rows(text)
        if len(rows) > len(pairs):
            pairs = rows
    return [ProjectedPair(p.easting, p.northing, "EN_parser", p.pos) for p in pairs]


# -----------------------------
# Angles (DMS / quadrant bearings)
# -----------------------------
DEG_SYM = r"[°º˚]"
MIN_SYM = r"['’′´]"
SEC_SYM = r"(?:\"|”|″|''|’’)"

@dataclass(frozen=True)
class DMS:
    deg: float
    minutes: float
    seconds: float

    def valid(self) -> bool:
        return 0 <= self.minutes < 60 and 0 <= self.seconds < 60

    def to_degrees(self) -> float:
        return abs(self.deg) + abs(self.minutes) / 60.0 + abs(self.seconds) / 3600.0

def normalize_az(az: float) -> float:
    az %= 360.0
    if az < 0:
        az += 360.0
    return az

def dms_to_decimal(deg_text: str, minutes: float, seconds: float, hemisphere: Optional[str] = None) -> float:
    """|deg| + |min|/60 + |sec|/3600, negative for S/W or an already-negative degree field."""
    mag = DMS(float(deg_text), minutes, seconds).to_degrees()
    h = canon_hemisphere(hemisphere)
    if h in ("S", "W") or deg_text.strip().startswith("-"):
        return -mag
    return mag

@dataclass(frozen=True)
class QuadrantBearing:
    ns: str
    angle: DMS
    ew: str

    def to_azimuth_deg(self) -> float:
        theta = self.angle.to_degrees()
        ns = canon_hemisphere(self.ns)
        ew = canon_hemisphere(self.ew)
        if ns == "N" and ew == "E":
            az = theta
        elif ns == "S" and ew == "E":
            az = 180.0 - theta
        elif ns == "S" and ew == "W":
            az = 180.0 + theta
        elif ns == "N" and ew == "W":
            az = 360.0 - theta
        else:
            raise ValueError(f"Invalid quadrant bearing: {self.ns} {self.ew}")
        return normalize_az(az)

QUADRANT_RE = re.compile(
    rf"""
    (?<![A-Za-z])(?P<ns>[NS])\s*
    (?P<d>\d{{1,2}})(?!\d)\s*(?:{DEG_SYM}\s*)?
    (?:(?P<m>\d{{1,2}})(?!\d)\s*(?:{MIN_SYM}\s*)?)?
    (?:(?P<s>\d{{1,2}}(?:[.,]\d+)?)(?![\d])\s*(?:{SEC_SYM}\s*)?)?
    (?P<ew>[EWLO])(?![A-Za-z])
    """,
    re.VERBOSE,
)

AZIMUTH_RE = re.compile(
    rf"""
    (?<![-\d.,])(?P<d>\d{{1,3}})\s*{DEG_SYM}\s*
    (?:(?P<m>\d{{1,2}})\s*{MIN_SYM}\s*)?
    (?:(?P<s>\d{{1,2}}(?:[.,]\d+)?)\s*{SEC_SYM}?)?
    """,
    re.VERBOSE,
)

DISTANCE_RE = re.compile(r"(?<![\d.,])(?P<v>\d{1,5}(?:[.,]\d{1,3})?)\s*m(?:etros?)?(?![A-Za-z²³])")

def _num_or_zero(s: Optional[str]) -> Optional[float]:
    if s is None:
        return 0.0
    return to_float(s)

def _quadrant_from_match(m: "re.Match[str]") -> Optional[float]:
    d = to_float(m.group("d"))
    mi = _num_or_zero(m.group("m"))
    s = _num_or_zero(m.group("s"))
    if d is None or mi is None or s is None:
        return None
    angle = DMS(d, mi, s)
    if not angle.valid() or angle.to_degrees() > 90.0:
        return None
    return QuadrantBearing(m.group("ns"), angle, m.group("ew")).to_azimuth_deg()

def _azimuth_from_match(m: "re.Match[str]") -> Optional[float]:
    d = to_float(m.group("d"))
    mi = _num_or_zero(m.group("m"))
    s = _num_or_zero(m.group("s"))
    if d is None or mi is None or s is None:
        return None
    angle = DMS(d, mi, s)
    if not angle.valid() or d >= 360.0:
        return None
    return normalize_az(angle.to_degrees())

def parse_quadrant_bearing(text: str) -> QuadrantBearing:
    m = QUADRANT_RE.search((text or "").strip())
    if not m:
        raise ValueError(f"Could not parse bearing: {text!r}")
    d = float(m.group("d"))
    mi = float(m.group("m") or 0)
    s = to_float(m.group("s")) if m.group("s") else 0.0
    angle = DMS(d, mi, s or 0.0)
    if not (0 <= d <= 90) or not angle.valid():
        raise ValueError(f"Quadrant bearing out of range: {text!r}")
    return QuadrantBearing(m.group("ns"), angle, m.group("ew"))


# -----------------------------
# Geographic (Lat/Lon) extractors
# -----------------------------
def _dms(p: str, signed: bool = True) -> str:
    sign = "-?" if signed else ""
    return (
        rf"(?<![\d.])(?P<{p}d>{sign}\d{{1,3}})\s*{DEG_SYM}\s*"
        rf"(?P<{p}m>\d{{1,2}})\s*{MIN_SYM}\s*"
        rf"(?P<{p}s>\d{{1,2}}(?:[.,]\d+)?)\s*{SEC_SYM}?"
    )

HEMI = rf"(?P<{{p}}h>[{HEMI_LETTERS}])(?![A-Za-z])"

def _hemi(p: str, optional: bool = False) -> str:
    h = HEMI.replace("{p}", p)
    return rf"(?:\s*{h})?" if optional else rf"\s*{h}"

# (a) "Longitude: -50°43'12,738" Latitude: -24°04'28,579""
LONLAT_ROW_RE = re.compile(
    r"(?i:long(?:itude)?)\.?\s*[:=]?\s*" + _dms("lo") + _hemi("lo", optional=True)
    + r"[\s;,|]*(?i:lat(?:itude)?)\.?\s*[:=]?\s*" + _dms("la") + _hemi("la", optional=True)
)
# (b) "24°04'28,579" S"
DMS_HEMI_RE = re.compile(_dms("x", signed=False) + _hemi("x"))
# (c) "Latitude: -24,074605"
NAMED_DECIMAL_RE = re.compile(
    r"(?<![A-Za-z])(?P<kind>(?i:latitude|lat|longitude|long|lon))\.?\s*[:=]?\s*"
    r"(?P<v>[+-]?\d{1,3}[.,]\d+)\s*(?:[°º˚]\s*)?(?:(?P<h>[NSEWLO])(?![A-Za-z]))?"
)
# (d) "Lat/Long: -24,074605, -50,720205"
LABELED_DECIMAL_RE = re.compile(
    r"(?P<label>(?i:lat(?:itude)?\s*/\s*lon(?:g(?:itude)?)?|lon(?:g(?:itude)?)?\s*/\s*lat(?:itude)?"
    r"|coordenadas\s+geogr[aá]ficas))\s*[:=]?\s*\(?\s*"
    r"(?P<a>[+-]?\d{1,3}[.,]\d+)\s*(?:[°º˚]\s*)?(?:[;/]\s*|,\s+|\s+)(?P<b>[+-]?\d{1,3}[.,]\d+)"
)
# (e) "-50°43'12,738" -24°04'28,579""
DMS_PAIR_RE = re.compile(_dms("lo") + r"\s*(?:[;,/|]\s*|\s)\s*(?:e\s+)?" + _dms("la"))
# (f) "24 04 28,579 S"
DMS_SPACED_RE = re.compile(
    r"(?<![\d.,])(?P<xd>-?\d{1,3})[ \t]+(?P<xm>\d{1,2})[ \t]+(?P<xs>\d{1,2}(?:[.,]\d+)?)[ \t]*" + HEMI.replace("{p}", "x")
)

def _valid_geo(lat: float, lon: float) -> bool:
    return abs(lat) <= 90.0 and abs(lon) <= 180.0

def _dms_value(m: "re.Match[str]", p: str, hemisphere: Optional[str] = None) -> Optional[float]:
    mi = to_float(m.group(p + "m"))
    s = to_float(m.group(p + "s"))
    if mi is None or s is None:
        return None
    if not DMS(0, mi, s).valid():
        return None
    return dms_to_decimal(m.group(p + "d"), mi, s, hemisphere)

def _pair_alternating(hits: List[Tuple[int, str, float]]) -> List[GeoPair]:
    """Pair adjacent hits of opposite axis; a same-axis hit replaces the pending one."""
    out: List[GeoPair] = []
    pending: Optional[Tuple[int, str, float]] = None
    for hit in hits:
        if pending is not None and pending[1] != hit[1]:
            lat = pending[2] if pending[1] == "lat" else hit[2]
            lon = pending[2] if pending[1] == "lon" else hit[2]
            if _valid_geo(lat, lon):
                out.append(GeoPair(lat, lon, "LatLon", pending[0]))
            pending = None
        else:
            pending = hit
    return out

def latlon_from_dms_rows(text: str) -> List[GeoPair]:
    out: List[GeoPair] = []
    for m in LONLAT_ROW_RE.finditer(text):
        lon = _dms_value(m, "lo", m.group("loh"))
        lat = _dms_value(m, "la", m.group("lah"))
        if lat is None or lon is None or not _valid_geo(lat, lon):
            continue
        out.append(GeoPair(lat, lon, "LatLon", m.start()))
    return out

def _hemisphere_hits(rx: "re.Pattern[str]", text: str) -> List[Tuple[int, str, float]]:
    hits: List[Tuple[int, str, float]] = []
    for m in rx.finditer(text):
        axis = hemisphere_axis(m.group("xh"))
        v = _dms_value(m, "x", m.group("xh"))
        if axis is None or v is None:
            continue
        hits.append((m.start(), axis, v))
    return hits

def latlon_from_hemisphere_dms(text: str) -> List[GeoPair]:
    return _pair_alternating(_hemisphere_hits(DMS_HEMI_RE, text))

def latlon_from_named_decimals(text: str) -> List[GeoPair]:
    hits: List[Tuple[int, str, float]] = []
    for m in NAMED_DECIMAL_RE.finditer(text):
        v = to_float(m.group("v"))
        if v is None:
            continue
        axis = "lat" if m.group("kind").lower().startswith("lat") else "lon"
        h = canon_hemisphere(m.group("h"))
        if h is not None and hemisphere_axis(h) == axis and h in ("S", "W"):
            v = -abs(v)
        hits.append((m.start(), axis, v))
    return _pair_alternating(hits)

def latlon_from_labeled_decimals(text: str) -> List[GeoPair]:
    out: List[GeoPair] = []
    for m in LABELED_DECIMAL_RE.finditer(text):
        a = to_float(m.group("a"))
        b = to_float(m.group("b"))
        if a is None or b is None:
            continue
        lat, lon = (b, a) if m.group("label").lower().startswith("lon") else (a, b)
        if _valid_geo(lat, lon):
            out.append(GeoPair(lat, lon, "LatLon", m.start()))
    return out

def latlon_from_dms_pairs(text: str) -> List[GeoPair]:
    out: List[GeoPair] = []
    for m in DMS_PAIR_RE.finditer(text):
        lon = _dms_value(m, "lo")
        lat = _dms_value(m, "la")
        if lat is None or lon is None or not _valid_geo(lat, lon):
            continue
        out.append(GeoPair(lat, lon, "LatLon", m.start()))
    return out

def latlon_from_spaced_dms(text: str) -> List[GeoPair]:
    return _pair_alternating(_hemisphere_hits(DMS_SPACED_RE, text))

LATLON_STRATEGIES: List[Tuple[str, Callable[[str], List[GeoPair]]]] = [
    ("dms_row", latlon_from_dms_rows),
    ("dms_hemisphere", latlon_from_hemisphere_dms),
    ("named_decimal", latlon_from_named_decimals),
    ("labeled_decimal", latlon_from_labeled_decimals),
    ("dms_pair", latlon_from_dms_pairs),
    ("dms_spaced", latlon_from_spaced_dms),
]

def _noop(msg: str) -> None:
    return None

def extract_latlon_pairs(text: str, log: Callable[[str], None] = _noop) -> List[GeoPair]:
    """
    Run the geographic strategies in order. The first one that yields three or more pairs
    wins; otherwise the one with the most pairs (earliest on ties).
    """
    text = (text or "").replace("\u00a0", " ")
    best: List[GeoPair] = []
    best_name = ""
    for name, fn in LATLON_STRATEGIES:
        pairs = fn(text)
        if len(pairs) >= 3:
            log(f"[latlon] strategy={name} pairs={len(pairs)}")
            return pairs
        if len(pairs) > len(best):
            best, best_name = pairs, name
    if best:
        log(f"[latlon] strategy={best_name} pairs={len(best)} (partial)")
    return best


# -----------------------------
# Azimuth + distance traverse segments
# -----------------------------
@dataclass(frozen=True)
class TraverseSegment:
    azimuth_deg: float
    distance_m: float
    pos: int = 0

    def usable(self) -> bool:
        return (
            math.isfinite(self.azimuth_deg)
            and math.isfinite(self.distance_m)
            and self.distance_m > 0
        )

CHUNK_SPLIT_RE = re.compile(r";|\.(?=\s)|\n|,\s*e\s")
PAIR_WINDOW_CHARS = 120

def _chunks(text: str) -> List[Tuple[int, str]]:
    out: List[Tuple[int, str]] = []
    start = 0
    for m in CHUNK_SPLIT_RE.finditer(text):
        out.append((start, text[start:m.start()]))
        start = m.end()
    out.append((start, text[start:]))
    return out

def _azimuth_tokens(text: str) -> List[Tuple[int, int, float]]:
    """(start, end, azimuth) for quadrant bearings, then absolute azimuths outside them."""
    toks: List[Tuple[int, int, float]] = []
    taken: List[Tuple[int, int]] = []
    for m in QUADRANT_RE.finditer(text):
        az = _quadrant_from_match(m)
        if az is None:
            continue
        toks.append((m.start(), m.end(), az))
        taken.append((m.start(), m.end()))
    for m in AZIMUTH_RE.finditer(text):
        if any(s <= m.start() < e for s, e in taken):
            continue
        az = _azimuth_from_match(m)
        if az is None:
            continue
        toks.append((m.start(), m.end(), az))
    toks.sort(key=lambda t: t[0])
    return toks

def _distance_tokens(text: str) -> List[Tuple[int, float]]:
    out: List[Tuple[int, float]] = []
    for m in DISTANCE_RE.finditer(text):
        v = to_float(m.group("v"))
        if v is None:
            continue
        out.append((m.start(), v))
    return out

def segments_by_sentence(text: str) -> Dict[int, TraverseSegment]:
    found: Dict[int, TraverseSegment] = {}
    for offset, chunk in _chunks(text):
        toks = _azimuth_tokens(chunk)
        dists = _distance_tokens(chunk)
        for i, (start, end, az) in enumerate(toks):
            limit = toks[i + 1][0] if i + 1 < len(toks) else len(chunk)
            for dpos, dval in dists:
                if end <= dpos < limit:
                    found[offset + start] = TraverseSegment(az, dval, offset + start)
                    break
    return found

def segments_by_proximity(text: str, window: int = PAIR_WINDOW_CHARS) -> Dict[int, TraverseSegment]:
    found: Dict[int, TraverseSegment] = {}
    dists = _distance_tokens(text)
    toks = _azimuth_tokens(text)
    for i, (start, end, az) in enumerate(toks):
        # a distance past the next bearing belongs to that bearing
        limit = toks[i + 1][0] if i + 1 < len(toks) else len(text)
        for dpos, dval in dists:
            if dpos < end:
                continue
            if dpos - end <= window and dpos < limit:
                found[start] = TraverseSegment(az, dval, start)
            break
    return found

def extract_traverse_segments(text: str) -> List[TraverseSegment]:
    """
    Azimuth + distance segments in document order.

    Sentence pass first, then a proximity pass for bearings whose distance sits across
    punctuation. A bearing found by both passes is kept once (sentence pass wins).
    Non-positive or non-finite distances are discarded.
    """
    text = (text or "").replace("\u00a0", " ")
    merged = segments_by_sentence(text)
    for pos, seg in segments_by_proximity(text).items():
        merged.setdefault(pos, seg)
    return [merged[k] for k in sorted(merged) if merged[k].usable()]
