#!/usr/bin/env python3
"""
geo_recon.py — Ring reconstruction from extracted coordinates (projected E/N output)

WHAT THIS MODULE DOES
- Turns whatever coordinate representation a page yields into ONE ordered ring of
  projected vertices (V001, V002, ...), trying strategies in a fixed order:
    1) baseline structured E/N parser (pluggable; first in the list)
    2) lat/lon pairs converted to the target UTM zone
    3) azimuth + distance traverse walked from a seed point
- Walks traverses (azimuth clockwise from North: dE = d*sin(az), dN = d*cos(az)),
  builds seedless relative rings and re-anchors them once a seed turns up.
- Post-processes rings: single-ring collapse, duplicate removal, OCR magnitude repair,
  topology report, coherence against the traverse calls in the text.

NOTES
- Fewer than 3 vertices is a failure the CALLER decides about; nothing here pads or closes rings.
- Closure is a presentation concern (renderers close the ring; the vertex list does not).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from coord_parse import (
    GeoPair,
    ProjectedPair,
    TraverseSegment,
    extract_en_pairs,
    extract_latlon_pairs,
    extract_traverse_segments,
    extract_xy_pairs,
    normalize_az,
    parse_projected_vertices,
)
from crs_registry import (
    GeoTransformer,
    ProjectionRegistry,
    ValidRange,
    convert_geo_pairs,
    resolve_projection_key,
)


MIN_RING_VERTICES = 3
EPS = 1e-10

CYCLE_TOLERANCE_M = 5.0     # a vertex this close to the start closes a cycle
CLOSED_TOLERANCE_M = 0.5    # first/last gap for a ring to count as closed
MIN_AREA_M2 = 1.0
MAX_AREA_M2 = 1e8
COHERENCE_AZ_DEG = 2.0
COHERENCE_DIST_M = 2.0

LogFn = Callable[[str], None]

def _noop(msg: str) -> None:
    return None


# -----------------------------
# Geometry primitives
# -----------------------------
@dataclass(frozen=True)
class Pt:
    e: float
    n: float

    def __add__(self, v: "Vec") -> "Pt":
        return Pt(self.e + v.de, self.n + v.dn)

    def __sub__(self, other: Union["Pt", "Vec"]) -> Union["Vec", "Pt"]:
        if isinstance(other, Pt):
            return Vec(self.e - other.e, self.n - other.n)
        return Pt(self.e - other.de, self.n - other.dn)

    def finite(self) -> bool:
        return math.isfinite(self.e) and math.isfinite(self.n)

@dataclass(frozen=True)
class Vec:
    de: float
    dn: float

    def mag(self) -> float:
        return math.hypot(self.de, self.dn)

    def scale(self, s: float) -> "Vec":
        return Vec(self.de * s, self.dn * s)

def az_deg_from_vec(v: Vec) -> float:
    # azimuth clockwise from North: atan2(E, N)
    ang = math.degrees(math.atan2(v.de, v.dn))
    if ang < 0:
        ang += 360.0
    return ang

def vec_from_az_deg(az_deg: float) -> Vec:
    az = math.radians(az_deg)
    return Vec(math.sin(az), math.cos(az))  # de, dn

def dist(a: Pt, b: Pt) -> float:
    return (a - b).mag()

def close_ring(points: List[Pt]) -> List[Pt]:
    if not points:
        return points
    if dist(points[0], points[-1]) > 1e-6:
        return points + [points[0]]
    return points

def centroid(poly: List[Pt]) -> Tuple[float, float]:
    ring = close_ring(poly)
    A = 0.0
    Cx = 0.0
    Cy = 0.0
    for i in range(len(ring) - 1):
        x1, y1 = ring[i].e, ring[i].n
        x2, y2 = ring[i + 1].e, ring[i + 1].n
        cr = x1 * y2 - x2 * y1
        A += cr
        Cx += (x1 + x2) * cr
        Cy += (y1 + y2) * cr
    if abs(A) < EPS:
        xs = [p.e for p in poly]
        ys = [p.n for p in poly]
        return (sum(xs) / len(xs), sum(ys) / len(ys))
    A *= 0.5
    Cx /= (6.0 * A)
    Cy /= (6.0 * A)
    return (Cx, Cy)

def signed_area(points: Sequence[Pt]) -> float:
    """Shoelace over the implicitly closed ring; positive = counter-clockwise."""
    n = len(points)
    if n < 3:
        return 0.0
    s = 0.0
    for i in range(n):
        a = points[i]
        b = points[(i + 1) % n]
        s += a.e * b.n - b.e * a.n
    return s / 2.0


# -----------------------------
# Vertices
# -----------------------------
@dataclass(frozen=True)
class Vertex:
    id: str
    easting: float
    northing: float
    order: int

    @property
    def pt(self) -> Pt:
        return Pt(self.easting, self.northing)

    def to_json(self) -> Dict[str, Any]:
        return {"id": self.id, "easting": self.easting, "northing": self.northing, "order": self.order}

def vertex_id(order: int) -> str:
    return f"V{order:03d}"

def to_vertices(points: Sequence[Pt]) -> List[Vertex]:
    return [Vertex(vertex_id(i + 1), p.e, p.n, i + 1) for i, p in enumerate(points)]

def points_of(vertices: Sequence[Vertex]) -> List[Pt]:
    return [v.pt for v in vertices]


# -----------------------------
# Traverse walk
# -----------------------------
def walk_traverse(seed: Pt, segments: Sequence[TraverseSegment]) -> List[Pt]:
    """
    Seed first, then one point per usable segment. Segments with a non-finite azimuth or
    distance, or a distance <= 0, are skipped without moving.
    """
    pts = [seed]
    cur = seed
    for seg in segments:
        if not seg.usable():
            continue
        cur = cur + vec_from_az_deg(seg.azimuth_deg).scale(seg.distance_m)
        pts.append(cur)
    return pts

def build_relative_ring(segments: Sequence[TraverseSegment]) -> List[Pt]:
    return walk_traverse(Pt(0.0, 0.0), segments)

def anchor_ring(relative: Sequence[Pt], seed: Pt) -> List[Pt]:
    """Translate a relative ring so its first point lands on the seed."""
    if not relative:
        return []
    off = seed - relative[0]
    return [Pt(p.e + off.de, p.n + off.dn) for p in relative]


# -----------------------------
# Plausibility
# -----------------------------
def is_plausible(points: Sequence[Pt]) -> bool:
    if len(points) < MIN_RING_VERTICES:
        return False
    if not all(p.finite() for p in points):
        return False
    if len({(p.e, p.n) for p in points}) < MIN_RING_VERTICES:
        return False
    return abs(signed_area(points)) > EPS


# -----------------------------
# Reconstructor
# -----------------------------
@dataclass
class Reconstruction:
    vertices: List[Vertex]
    strategy: str
    projection_key: Optional[str] = None
    segments: List[TraverseSegment] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return len(self.vertices) >= MIN_RING_VERTICES

@dataclass
class _Work:
    text: str
    hint: Optional[str]
    baseline: List[ProjectedPair] = field(default_factory=list)
    geo: List[GeoPair] = field(default_factory=list)
    segments: List[TraverseSegment] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    resolved_key: Optional[str] = None

    def key(self) -> Optional[str]:
        return self.resolved_key or self.hint

Strategy = Callable[[_Work], List[Pt]]

class GeometryReconstructor:
    """
    Fixed-priority strategy list; the first strategy whose points form a plausible ring
    of >= 3 vertices wins. The registry and transformer are passed in, never global.
    """

    def __init__(
        self,
        registry: ProjectionRegistry,
        baseline_parser: Optional[Callable[[str], List[ProjectedPair]]] = parse_projected_vertices,
        transformer: Optional[GeoTransformer] = None,
        log: LogFn = _noop,
    ):
        self.registry = registry
        self.baseline_parser = baseline_parser
        self.log = log
        self.transformer = transformer if transformer is not None else GeoTransformer(log=log)
        self.strategies: List[Tuple[str, Strategy]] = [
            ("baseline", self._from_baseline),
            ("latlon", self._from_latlon),
            ("traverse", self._from_traverse),
        ]

    def reconstruct(self, text: str, projection_key_hint: Optional[str] = None) -> Reconstruction:
        work = _Work(text=text or "", hint=projection_key_hint)
        partial: List[Pt] = []
        for name, strategy in self.strategies:
            pts = strategy(work)
            if len(pts) >= MIN_RING_VERTICES and is_plausible(pts):
                self.log(f"[recon] strategy={name} vertices={len(pts)}")
                return Reconstruction(to_vertices(pts), name, work.key(), work.segments, work.notes)
            self.log(f"[recon] strategy={name} insufficient ({len(pts)} point(s))")
            if len(pts) > len(partial):
                partial = pts
        work.notes.append(f"no strategy produced a ring; {len(partial)} point(s) kept")
        self.log(f"[recon] no ring (partial={len(partial)})")
        return Reconstruction(to_vertices(partial), "partial", work.key(), work.segments, work.notes)

    # strategies -------------------------------------------------------
    def _from_baseline(self, work: _Work) -> List[Pt]:
        if self.baseline_parser is None:
            return []
        try:
            work.baseline = list(self.baseline_parser(work.text) or [])
        except Exception as e:
            work.notes.append(f"baseline parser failed: {e}")
            self.log(f"[recon] baseline parser failed: {e}")
            work.baseline = []
        return [Pt(p.easting, p.northing) for p in work.baseline]

    def _from_latlon(self, work: _Work) -> List[Pt]:
        work.geo = extract_latlon_pairs(work.text, log=self.log)
        if len(work.geo) < MIN_RING_VERTICES:
            return []
        projected = convert_geo_pairs(work.geo, self.registry, self.transformer, work.hint, log=self.log)
        if projected:
            work.resolved_key = resolve_projection_key(work.geo, self.registry, work.hint)
        return [Pt(p.easting, p.northing) for p in projected]

    def _from_traverse(self, work: _Work) -> List[Pt]:
        work.segments = extract_traverse_segments(work.text)
        if len(work.segments) < 2:
            return []
        relative = build_relative_ring(work.segments)
        seed = self.resolve_seed(work)
        if seed is None:
            work.notes.append(f"{len(work.segments)} traverse segments but no seed point")
            self.log("[recon] traverse found but no seed point")
            return []
        return anchor_ring(relative, seed)

    def resolve_seed(self, work: _Work) -> Optional[Pt]:
        """Baseline single point, then loose E/N or X/Y pair, then first lat/lon pair converted."""
        if 1 <= len(work.baseline) < MIN_RING_VERTICES:
            p = work.baseline[0]
            self.log(f"[recon] seed from baseline ({p.origin})")
            return Pt(p.easting, p.northing)

        loose = extract_en_pairs(work.text) or extract_xy_pairs(work.text)
        if loose:
            p = loose[0]
            self.log(f"[recon] seed from loose pair ({p.origin})")
            return Pt(p.easting, p.northing)

        if work.geo:
            conv = convert_geo_pairs(work.geo[:1], self.registry, self.transformer, work.hint, log=self.log)
            if conv:
                work.resolved_key = resolve_projection_key(work.geo[:1], self.registry, work.hint)
                self.log("[recon] seed from first lat/lon pair")
                return Pt(conv[0].easting, conv[0].northing)
        return None

def parse_vertices(
    text: str,
    projection_key_hint: Optional[str] = None,
    registry: Optional[ProjectionRegistry] = None,
    baseline_parser: Optional[Callable[[str], List[ProjectedPair]]] = parse_projected_vertices,
    transformer: Optional[GeoTransformer] = None,
    log: LogFn = _noop,
) -> List[Vertex]:
    """
    Page (or whole-document) text -> ordered vertex ring. May hold 0-2 vertices; callers
    must treat fewer than 3 as failure.
    """
    recon = GeometryReconstructor(
        registry if registry is not None else ProjectionRegistry.default(),
        baseline_parser=baseline_parser,
        transformer=transformer,
        log=log,
    )
    return recon.reconstruct(text, projection_key_hint).vertices


# -----------------------------
# Ring post-processing
# -----------------------------
def collapse_to_single_ring(points: Sequence[Pt], tol: float = CYCLE_TOLERANCE_M) -> List[Pt]:
    """
    Keep the first cycle: the run from the start up to the first later point (index >= 3)
    that returns within tol of the start. The closing point itself is dropped.
    """
    for i in range(MIN_RING_VERTICES, len(points)):
        if dist(points[i], points[0]) < tol:
            return list(points[:i])
    return list(points)

def drop_consecutive_duplicates(points: Sequence[Pt]) -> List[Pt]:
    out: List[Pt] = []
    for p in points:
        if out and out[-1] == p:
            continue
        out.append(p)
    return out

def auto_scale(value: float, lo: float, hi: float) -> Optional[float]:
    """Bring an OCR value into [lo, hi] by x10^1..10^4 or /10^1..10^7; None if impossible."""
    if not math.isfinite(value):
        return None
    if lo <= value <= hi:
        return value
    if 0 < value < lo:
        for power in range(1, 5):
            v = value * 10 ** power
            if lo <= v <= hi:
                return v
    if value > hi:
        for power in range(1, 8):
            v = value / 10 ** power
            if lo <= v <= hi:
                return v
    return None

def repair_magnitudes(points: Sequence[Pt], vr: Optional[ValidRange]) -> Tuple[List[Pt], List[str]]:
    """
    Rescale out-of-range UTM coordinates (dropped decimal separators). Only runs when at
    least one vertex already sits inside the range; unrecoverable vertices are reported, kept.
    """
    if vr is None or not points:
        return list(points), []
    in_range = [p for p in points if vr.e_min <= p.e <= vr.e_max and vr.n_min <= p.n <= vr.n_max]
    if not in_range:
        return list(points), ["no vertex inside the expected UTM range; magnitude repair skipped"]

    out: List[Pt] = []
    warnings: List[str] = []
    for i, p in enumerate(points):
        e = auto_scale(p.e, vr.e_min, vr.e_max)
        n = auto_scale(p.n, vr.n_min, vr.n_max)
        vid = vertex_id(i + 1)
        if e is not None and e != p.e:
            warnings.append(f"{vid}: easting rescaled {p.e} -> {e}")
        if n is not None and n != p.n:
            warnings.append(f"{vid}: northing rescaled {p.n} -> {n}")
        if e is None or n is None:
            warnings.append(f"{vid}: outside expected range ({p.e}, {p.n})")
        out.append(Pt(e if e is not None else p.e, n if n is not None else p.n))
    return out, warnings

def _segments_cross(p1: Pt, p2: Pt, p3: Pt, p4: Pt) -> bool:
    def ccw(a: Pt, b: Pt, c: Pt) -> bool:
        return (c.n - a.n) * (b.e - a.e) > (b.n - a.n) * (c.e - a.e)
    return ccw(p1, p3, p4) != ccw(p2, p3, p4) and ccw(p1, p2, p3) != ccw(p1, p2, p4)

def self_intersections(points: Sequence[Pt]) -> List[Tuple[int, int]]:
    """Pairs of non-adjacent edge indices (edge i = points[i] -> points[i+1], ring closed) that cross."""
    n = len(points)
    hits: List[Tuple[int, int]] = []
    if n < 4:
        return hits
    for i in range(n):
        a1, a2 = points[i], points[(i + 1) % n]
        for j in range(i + 2, n):
            if i == 0 and j == n - 1:
                continue
            b1, b2 = points[j], points[(j + 1) % n]
            if _segments_cross(a1, a2, b1, b2):
                hits.append((i, j))
    return hits

@dataclass
class RingReport:
    vertex_count: int
    area_m2: float
    ccw: Optional[bool]
    perimeter_m: float
    closure_gap_m: float
    closed: bool
    intersections: List[Tuple[int, int]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_json(self) -> Dict[str, Any]:
        return {
            "vertex_count": self.vertex_count,
            "area_m2": self.area_m2,
            "ccw": self.ccw,
            "perimeter_m": self.perimeter_m,
            "closure_gap_m": self.closure_gap_m,
            "closed": self.closed,
            "intersections": [list(t) for t in self.intersections],
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }

def ring_report(points: Sequence[Pt]) -> RingReport:
    n = len(points)
    if n < MIN_RING_VERTICES:
        return RingReport(n, 0.0, None, 0.0, 0.0, False, errors=[f"at least {MIN_RING_VERTICES} vertices required (got {n})"])

    gap = dist(points[0], points[-1])
    closed = gap <= CLOSED_TOLERANCE_M
    # an explicit closing vertex is not an edge of its own
    ring = list(points[:-1]) if closed and n > MIN_RING_VERTICES else list(points)
    m = len(ring)
    sa = signed_area(ring)
    area = abs(sa)
    perim = sum(dist(ring[i], ring[(i + 1) % m]) for i in range(m))
    hits = self_intersections(ring)

    rep = RingReport(n, area, sa > 0, perim, gap, closed, hits)
    if area < MIN_AREA_M2:
        rep.errors.append(f"area too small ({area:.2f} m2); likely extraction error")
    if hits:
        rep.errors.append(f"self-intersections between {len(hits)} edge pair(s)")
    if area > MAX_AREA_M2:
        rep.warnings.append(f"area unusually large ({area:.0f} m2)")
    if sa < 0:
        rep.warnings.append("vertices ordered clockwise")
    return rep

def edge_measurements(points: Sequence[Pt]) -> List[Tuple[float, float]]:
    """(distance, azimuth) from each vertex to the next; the last one goes back to the first."""
    n = len(points)
    out: List[Tuple[float, float]] = []
    for i in range(n):
        v = points[(i + 1) % n] - points[i]
        out.append((v.mag(), az_deg_from_vec(v)))
    return out

@dataclass(frozen=True)
class EdgeCheck:
    edge: int
    stated_az: float
    stated_dist: float
    calc_az: float
    calc_dist: float
    az_diff: float
    dist_diff: float

    @property
    def coherent(self) -> bool:
        return self.az_diff < COHERENCE_AZ_DEG and self.dist_diff < COHERENCE_DIST_M

    def to_json(self) -> Dict[str, Any]:
        return {
            "edge": self.edge,
            "stated": {"azimuth": self.stated_az, "distance": self.stated_dist},
            "calculated": {"azimuth": self.calc_az, "distance": self.calc_dist},
            "az_diff": self.az_diff,
            "dist_diff": self.dist_diff,
            "coherent": self.coherent,
        }

def traverse_coherence(points: Sequence[Pt], segments: Sequence[TraverseSegment]) -> List[EdgeCheck]:
    """Compare ring edge i with the i-th stated azimuth/distance."""
    checks: List[EdgeCheck] = []
    for i in range(min(len(segments), len(points) - 1)):
        v = points[i + 1] - points[i]
        calc_az = az_deg_from_vec(v)
        calc_dist = v.mag()
        seg = segments[i]
        d = abs(normalize_az(seg.azimuth_deg) - calc_az)
        checks.append(EdgeCheck(
            i, seg.azimuth_deg, seg.distance_m, calc_az, calc_dist,
            min(d, 360.0 - d), abs(seg.distance_m - calc_dist),
        ))
    return checks
