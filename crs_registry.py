#!/usr/bin/env python3
"""
crs_registry.py — Projection registry + geographic -> UTM resolution for Brazilian surveys

WHAT THIS MODULE DOES
- Holds the fixed, read-only registry of supported coordinate reference systems
  (SIRGAS 2000 UTM 21S..25S, SAD69 UTM 22S/23S, WGS 84 geographic, a local unprojected grid).
- Picks the target UTM zone for geographic coordinates (explicit key, or from mean longitude).
- Converts lon/lat to projected coordinates through pyproj (optional dependency).
- Guesses the CRS of a document from its text (datum, fuso/zona, MC, state names) and,
  failing that, from coordinate magnitudes.

FAILURE POLICY
- pyproj missing or raising -> the pair yields no result; callers keep going.
- A zone key that is not in the registry is a failure for that pair, never a silent default.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from coord_parse import GeoPair, ProjectedPair


WGS84_EPSG = 4326
FALLBACK_ZONE = 22

# Central meridian (degrees west) -> UTM zone.
MC_TO_ZONE = {57: 21, 51: 22, 45: 23, 39: 24, 33: 25}


# -----------------------------
# Definitions
# -----------------------------
@dataclass(frozen=True)
class ProjectionDefinition:
    key: str
    name: str
    epsg: Optional[int]
    wkt: str
    zone: Optional[int] = None
    geographic: bool = False

    def crs_code(self) -> Optional[str]:
        return f"EPSG:{self.epsg}" if self.epsg else None

    def target_definition(self) -> str:
        """EPSG code when known, WKT otherwise."""
        return self.crs_code() or self.wkt

@dataclass(frozen=True)
class ValidRange:
    n_min: float
    n_max: float
    e_min: float = 300e3
    e_max: float = 850e3

# Plausible UTM magnitudes per zone for Brazilian properties.
ZONE_RANGES: Dict[int, ValidRange] = {
    21: ValidRange(6.45e6, 6.75e6),
    22: ValidRange(7.15e6, 7.45e6),
    23: ValidRange(8.0e6, 9.0e6),
    24: ValidRange(9.0e6, 10.5e6),
    25: ValidRange(10.0e6, 10.5e6),
}

_SIRGAS_GEOGCS = (
    'GEOGCS["SIRGAS 2000",DATUM["Sistema de Referencia Geocentrico para las Americas 2000",'
    'SPHEROID["GRS 1980",6378137,298.257222101]],PRIMEM["Greenwich",0],UNIT["degree",0.0174532925199433]]'
)
_SAD69_GEOGCS = (
    'GEOGCS["SAD69",DATUM["South_American_Datum_1969",'
    'SPHEROID["GRS 1967 Modified",6378160,298.25]],PRIMEM["Greenwich",0],UNIT["degree",0.0174532925199433]]'
)
_WGS84_WKT = (
    'GEOGCS["WGS 84",DATUM["WGS_1984",SPHEROID["WGS 84",6378137,298.257223563]],'
    'PRIMEM["Greenwich",0],UNIT["degree",0.0174532925199433]]'
)
_LOCAL_WKT = 'LOCAL_CS["Local unprojected",LOCAL_DATUM["Arbitrary",0],UNIT["metre",1],AXIS["X",EAST],AXIS["Y",NORTH]]'

def central_meridian(zone: int) -> int:
    return zone * 6 - 183

def utm_south_wkt(name: str, geogcs: str, zone: int) -> str:
    return (
        f'PROJCS["{name}",{geogcs},PROJECTION["Transverse_Mercator"],'
        f'PARAMETER["latitude_of_origin",0],PARAMETER["central_meridian",{central_meridian(zone)}],'
        f'PARAMETER["scale_factor",0.9996],PARAMETER["false_easting",500000],'
        f'PARAMETER["false_northing",10000000],UNIT["metre",1]]'
    )

def _builtin_definitions() -> List[ProjectionDefinition]:
    defs: List[ProjectionDefinition] = []
    for zone in (21, 22, 23, 24, 25):
        name = f"SIRGAS 2000 / UTM zone {zone}S"
        defs.append(ProjectionDefinition(
            f"SIRGAS2000_{zone}S", name, 31960 + zone, utm_south_wkt(name, _SIRGAS_GEOGCS, zone), zone))
    for zone in (22, 23):
        name = f"SAD69 / UTM zone {zone}S"
        defs.append(ProjectionDefinition(
            f"SAD69_{zone}S", name, 29170 + zone, utm_south_wkt(name, _SAD69_GEOGCS, zone), zone))
    defs.append(ProjectionDefinition("WGS84", "WGS 84", WGS84_EPSG, _WGS84_WKT, geographic=True))
    defs.append(ProjectionDefinition("LOCAL", "Local unprojected", None, _LOCAL_WKT))
    return defs


# -----------------------------
# Registry (read-only)
# -----------------------------
class ProjectionRegistry:
    def __init__(self, definitions: Sequence[ProjectionDefinition]):
        self._defs: Mapping[str, ProjectionDefinition] = MappingProxyType({d.key: d for d in definitions})

    @classmethod
    def default(cls) -> "ProjectionRegistry":
        return cls(_builtin_definitions())

    def get(self, key: Optional[str]) -> Optional[ProjectionDefinition]:
        if not key:
            return None
        return self._defs.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._defs

    def __iter__(self) -> Iterator[ProjectionDefinition]:
        return iter(self._defs.values())

    def __len__(self) -> int:
        return len(self._defs)

    def keys(self) -> List[str]:
        return list(self._defs.keys())

    @property
    def definitions(self) -> Mapping[str, ProjectionDefinition]:
        return self._defs

def valid_range(registry: ProjectionRegistry, key: Optional[str]) -> Optional[ValidRange]:
    d = registry.get(key)
    if d is None or d.zone is None:
        return None
    return ZONE_RANGES.get(d.zone)


# -----------------------------
# Projection resolver
# -----------------------------
def utm_zone_for_lon(lon: float) -> int:
    return int(math.floor((lon + 180.0) / 6.0)) + 1

def resolve_projection_key(
    pairs: Sequence[GeoPair],
    registry: ProjectionRegistry,
    hint: Optional[str] = None,
) -> Optional[str]:
    """
    Explicit hint wins; otherwise SIRGAS2000_<zone>S from the mean longitude.
    Returns None when the resulting key is not registered.
    """
    if hint:
        return hint if hint in registry else None
    if not pairs:
        return None
    mean_lon = sum(p.longitude for p in pairs) / len(pairs)
    key = f"SIRGAS2000_{utm_zone_for_lon(mean_lon)}S"
    return key if key in registry else None

def try_import_pyproj():
    try:
        import pyproj  # type: ignore
        return pyproj
    except Exception:
        return None

class GeoTransformer:
    """
    WGS 84 lon/lat -> target CRS via pyproj.Transformer (always_xy).
    Transformers are cached per target for the life of the instance.
    """

    def __init__(self, log: Callable[[str], None] = lambda msg: None):
        self.log = log
        self._cache: Dict[str, Any] = {}
        self._warned_missing = False

    def _transformer(self, target: ProjectionDefinition) -> Any:
        if target.key in self._cache:
            return self._cache[target.key]
        pyproj = try_import_pyproj()
        if pyproj is None:
            if not self._warned_missing:
                self.log("[crs] pyproj not installed (pip install pyproj); lat/lon conversion disabled")
                self._warned_missing = True
            return None
        tr = pyproj.Transformer.from_crs(f"EPSG:{WGS84_EPSG}", target.target_definition(), always_xy=True)
        self._cache[target.key] = tr
        return tr

    def to_projected(self, lon: float, lat: float, target: ProjectionDefinition) -> Optional[Tuple[float, float]]:
        try:
            tr = self._transformer(target)
            if tr is None:
                return None
            x, y = tr.transform(lon, lat)
        except Exception as e:
            self.log(f"[crs] transform to {target.key} failed: {e}")
            return None
        if not (math.isfinite(x) and math.isfinite(y)):
            return None
        return float(x), float(y)

def convert_geo_pairs(
    pairs: Sequence[GeoPair],
    registry: ProjectionRegistry,
    transformer: GeoTransformer,
    hint: Optional[str] = None,
    log: Callable[[str], None] = lambda msg: None,
) -> List[ProjectedPair]:
    key = resolve_projection_key(pairs, registry, hint)
    target = registry.get(key)
    if target is None:
        log(f"[crs] no registered projection for hint={hint!r}; lat/lon pairs not converted")
        return []
    out: List[ProjectedPair] = []
    for p in pairs:
        xy = transformer.to_projected(p.longitude, p.latitude, target)
        if xy is None:
            continue
        out.append(ProjectedPair(xy[0], xy[1], "LatLon", p.pos))
    log(f"[crs] converted {len(out)}/{len(pairs)} lat/lon pairs to {target.key}")
    return out


# -----------------------------
# Projection detection from document text
# -----------------------------
@dataclass(frozen=True)
class ProjectionGuess:
    key: str
    confidence: str
    reason: str

    def to_json(self) -> Dict[str, str]:
        return {"key": self.key, "confidence": self.confidence, "reason": self.reason}

# UF abbreviation after a hyphen, slash or comma: "Curitiba-PR", "Curitiba - PR", "Lapa/PR"
UF_PREFIX = r"[\-/,–]\s*"

STATE_ZONES: List[Tuple["re.Pattern[str]", int]] = [
    (re.compile(UF_PREFIX + r"pr\b|\bparan[aá]\b"), 22),
    (re.compile(UF_PREFIX + r"sc\b|\bsanta\s*catarina\b"), 22),
    (re.compile(UF_PREFIX + r"rs\b|\brio\s*grande\s*do\s*sul\b"), 22),
    (re.compile(UF_PREFIX + r"sp\b|\bs[aã]o\s*paulo\b"), 23),
    (re.compile(UF_PREFIX + r"rj\b|\brio\s*de\s*janeiro\b"), 23),
    (re.compile(UF_PREFIX + r"mg\b|\bminas\s*gerais\b"), 23),
    (re.compile(UF_PREFIX + r"es\b|\besp[ií]rito\s*santo\b"), 24),
]

ZONE_RE = re.compile(r"(?:fuso|zona|zone)\s*[:=]?\s*(\d{2})\s*([ns])?|utm\s*[:=]?\s*(\d{2})\s*([ns])?")
MC_RE = re.compile(r"(?:\bmc|meridiano\s+central)\s*[:=]?\s*-?(\d{2})\s*°?\s*([wo])?")

def zone_from_state(text_lower: str) -> Optional[int]:
    for rx, zone in STATE_ZONES:
        if rx.search(text_lower):
            return zone
    return None

def zone_from_magnitudes(vertices: Sequence[Any]) -> Optional[int]:
    """Mean northing 7-8 M with easting 600-800 k -> 22, 300-600 k -> 23."""
    if not vertices:
        return None
    avg_e = sum(v.easting for v in vertices) / len(vertices)
    avg_n = sum(v.northing for v in vertices) / len(vertices)
    if 7_000_000 < avg_n < 8_000_000:
        if 600_000 < avg_e < 800_000:
            return 22
        if 300_000 < avg_e < 600_000:
            return 23
    return None

def detect_projection(text: str, vertices: Sequence[Any] = ()) -> ProjectionGuess:
    t = (text or "").lower()
    has_sad = re.search(r"sad[\s\-]?69", t) is not None
    has_sirgas = re.search(r"sirgas\s*2000", t) is not None
    has_wgs = re.search(r"wgs\s*-?\s*84", t) is not None

    zone: Optional[int] = None
    reasons: List[str] = []
    conf = "low"

    m = ZONE_RE.search(t)
    if m:
        zone = int(m.group(1) or m.group(3))
        reasons.append(f"fuso/zona {zone} found in text.")
        conf = "high"

    if zone is None:
        m = MC_RE.search(t)
        if m and int(m.group(1)) in MC_TO_ZONE:
            mc = int(m.group(1))
            zone = MC_TO_ZONE[mc]
            reasons.append(f"central meridian {mc}°W -> zone {zone}.")
            conf = "high"

    if zone is None:
        zone = zone_from_state(t)
        if zone is not None:
            reasons.append(f"zone {zone}S inferred from state/locality.")
            conf = "medium"

    if zone is None:
        zone = zone_from_magnitudes(vertices)
        if zone is not None:
            reasons.append(f"zone {zone}S inferred from coordinate magnitudes.")
            conf = "medium"

    if zone is None:
        zone = FALLBACK_ZONE
        reasons.append(f"zone not found; fallback {zone}S.")

    if has_wgs:
        return ProjectionGuess("WGS84", "high", "'WGS 84' found in text.")

    if has_sad:
        key = "SAD69_23S" if zone == 23 else "SAD69_22S"
        return ProjectionGuess(key, conf, "'SAD-69' found in text. " + " ".join(reasons))

    prefix = "'SIRGAS 2000' found in text. " if has_sirgas else "datum assumed SIRGAS 2000. "
    return ProjectionGuess(f"SIRGAS2000_{zone}S", conf, prefix + " ".join(reasons))
