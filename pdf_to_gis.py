#!/usr/bin/env python3
"""
pdf_to_gis.py — Survey PDF (matrícula / memorial descritivo) -> georeferenced polygon CLI

WHAT THIS TOOL DOES
- Reads each PDF page by page (text layer, OCR when the text layer is not enough).
- Detects the document id (MATRÍCULA Nº ...) per page and splits a PDF into one document per
  matrícula; detects the CRS (datum, fuso, MC, state, magnitudes).
- Reconstructs ONE vertex ring per document (E/N pairs, lat/lon, or azimuth+distance traverse).
- Cleans the ring (cycle collapse, duplicates, OCR magnitude repair), validates its topology,
  and checks it against the azimuths/distances stated in the text.
- Writes result.json, a semicolon CSV, a .prj, report.md, and optional SVG/DXF drawings.

WORKFLOW (typical)
  python pdf_to_gis.py extract matricula.pdf --out out/
  python pdf_to_gis.py extract a.pdf b.pdf --out out/ --crs SIRGAS2000_22S --svg --dxf
  python pdf_to_gis.py extract scan.pdf --out out/ --ocr-text-dir ocr_pages/
  python pdf_to_gis.py parse memorial.txt --crs SIRGAS2000_23S
  python pdf_to_gis.py crs-list

NOTE
- This is NOT boundary determination. It transcribes record geometry and reports how far it can be trusted.
"""

from __future__ import annotations

import argparse
import datetime as dt
import json
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from tabulate import tabulate

from coord_parse import extract_latlon_pairs, extract_traverse_segments, parse_projected_vertices
from crs_registry import (
    GeoTransformer,
    ProjectionGuess,
    ProjectionRegistry,
    detect_projection,
    resolve_projection_key,
    valid_range,
    zone_from_magnitudes,
)
from geo_recon import (
    EdgeCheck,
    GeometryReconstructor,
    Pt,
    RingReport,
    Vertex,
    centroid,
    close_ring,
    collapse_to_single_ring,
    drop_consecutive_duplicates,
    edge_measurements,
    parse_vertices,
    points_of,
    repair_magnitudes,
    ring_report,
    to_vertices,
    traverse_coherence,
)
from page_text import (
    PageText,
    PdfSource,
    TextDirOcrBridge,
    iter_page_texts,
    resolve_dpi,
    resolve_ocr_lang,
)


PROJECT_VERSION = "1.0.0"

DOC_ID_HEADER_CHARS = 2000
NO_DOC_ID = "SEM_ID"
COORD_DECIMALS = 3
DIST_DECIMALS = 2
AZ_DECIMALS = 4


# -----------------------------
# Filesystem / formatting
# -----------------------------
def now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()

def ensure_dir(p: Union[str, Path]) -> Path:
    p = Path(p)
    p.mkdir(parents=True, exist_ok=True)
    return p

def write_json(path: Union[str, Path], obj: Any) -> None:
    path = Path(path)
    ensure_dir(path.parent)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False)

def write_text(path: Union[str, Path], text: str) -> None:
    path = Path(path)
    ensure_dir(path.parent)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)

def fmt_m(x: float, d: int = DIST_DECIMALS) -> str:
    return f"{x:.{d}f}"

def sanitize_name(name: str) -> str:
    s = re.sub(r"[^\w.\-]+", "_", name, flags=re.UNICODE).strip("_")
    return s or "documento"


# -----------------------------
# Audit logging (append-only)
# -----------------------------
class AuditLogger:
    def __init__(self, ndjson_path: Path):
        self.path = ndjson_path
        ensure_dir(self.path.parent)

    def log(self, event: str, payload: Dict[str, Any]) -> None:
        rec = {"ts": now_iso(), "event": event, "payload": payload}
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(rec, ensure_ascii=False) + "\n")


# -----------------------------
# Document id
# -----------------------------
DOC_ID_PATTERNS: List[Tuple[str, "re.Pattern[str]"]] = [
    ("matricula", re.compile(r"MATR[ÍI]CULA\s*N[ºo°e]?\.?\s*:?\s*([\d.,]+)", re.IGNORECASE)),
    ("mat", re.compile(r"\bMAT\s*\.?\s*N[ºo°e]\.?\s*:?\s*([\d.,]+)", re.IGNORECASE)),
    ("protocolo", re.compile(r"PROTOCOLO\s*N[ºo°e]?\.?\s*:?\s*([\d.,]+)", re.IGNORECASE)),
]

def detect_doc_id(text: str) -> str:
    """First MATRÍCULA/MAT./PROTOCOLO number in the header, digits only, no leading zeros."""
    header = (text or "").replace("\u00a0", " ")[:DOC_ID_HEADER_CHARS]
    for _, rx in DOC_ID_PATTERNS:
        m = rx.search(header)
        if not m:
            continue
        ident = re.sub(r"[.,]", "", m.group(1)).lstrip("0")
        if ident:
            return ident
    return NO_DOC_ID

def split_pages_into_documents(pages: Sequence[PageText]) -> List[Tuple[str, List[PageText]]]:
    """
    Group pages by the document id in each page header.

    - a page without an id continues the document before it
    - leading pages without an id join the first identified document
    - pages of the same id are merged even when another document sits between them
    A PDF with no id at all is one SEM_ID document.
    """
    runs: List[Tuple[str, List[PageText]]] = []
    for page in pages:
        ident = detect_doc_id(page.text)
        if runs and ident in (NO_DOC_ID, runs[-1][0]):
            runs[-1][1].append(page)
        else:
            runs.append((ident, [page]))

    if len(runs) > 1 and runs[0][0] == NO_DOC_ID:
        lead = runs.pop(0)[1]
        runs[0] = (runs[0][0], lead + runs[0][1])

    merged: Dict[str, List[PageText]] = {}
    for ident, run in runs:
        merged.setdefault(ident, []).extend(run)
    if not merged:
        return [(NO_DOC_ID, [])]
    return [(ident, sorted(run, key=lambda p: p.page)) for ident, run in merged.items()]


# -----------------------------
# Document result
# -----------------------------
@dataclass
class DocumentResult:
    source: str
    doc_id: str
    pages: List[PageText]
    projection: ProjectionGuess
    projection_key: Optional[str]
    strategy: str
    vertices: List[Vertex]
    ring: RingReport
    coherence: List[EdgeCheck] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return len(self.vertices) >= 3

    def to_json(self) -> Dict[str, Any]:
        return {
            "version": PROJECT_VERSION,
            "source": self.source,
            "doc_id": self.doc_id,
            "pages": [p.to_json() for p in self.pages],
            "projection": {**self.projection.to_json(), "used": self.projection_key},
            "strategy": self.strategy,
            "vertices": [v.to_json() for v in self.vertices],
            "ring": self.ring.to_json(),
            "coherence": [c.to_json() for c in self.coherence],
            "warnings": list(self.warnings),
        }

def choose_projection(
    text: str,
    registry: ProjectionRegistry,
    crs: Optional[str] = None,
) -> Tuple[ProjectionGuess, Optional[str]]:
    """
    (guess, hint). An explicit key always wins. A detected key is only used as the hint when
    the text or magnitudes actually supported it; a bare fallback leaves lat/lon to pick its zone.
    A geographic datum (WGS 84) is never the hint: the ring is projected to the UTM zone
    the coordinates fall in.
    """
    if crs:
        return ProjectionGuess(crs, "explicit", "given with --crs"), crs
    projected = parse_projected_vertices(text)
    guess = detect_projection(text, projected)
    if is_geographic(registry, guess.key):
        # a stated geographic datum does not give the UTM zone of the output ring
        return guess, utm_key_from_coordinates(text, projected, registry)
    if guess.key not in registry or guess.confidence == "low":
        return guess, None
    return guess, guess.key

def utm_key_from_coordinates(
    text: str,
    projected: Sequence[Any],
    registry: ProjectionRegistry,
) -> Optional[str]:
    """SIRGAS2000_<zone>S from the mean longitude of lat/lon pairs, else from E/N magnitudes."""
    geo = extract_latlon_pairs(text)
    if geo:
        return resolve_projection_key(geo, registry)
    zone = zone_from_magnitudes(projected)
    key = f"SIRGAS2000_{zone}S" if zone else None
    return key if key in registry else None

def is_geographic(registry: ProjectionRegistry, key: Optional[str]) -> bool:
    d = registry.get(key)
    return d is not None and d.geographic

def build_result(
    text: str,
    registry: ProjectionRegistry,
    source: str = "",
    pages: Optional[List[PageText]] = None,
    crs: Optional[str] = None,
    transformer: Optional[GeoTransformer] = None,
    doc_id: Optional[str] = None,
    log: Callable[[str], None] = lambda msg: None,
) -> DocumentResult:
    guess, hint = choose_projection(text, registry, crs)
    log(f"[crs] {guess.key} ({guess.confidence}): {guess.reason}")

    recon = GeometryReconstructor(registry, transformer=transformer, log=log).reconstruct(text, hint)
    fallback = None if is_geographic(registry, guess.key) else guess.key
    key = recon.projection_key or hint or fallback
    warnings = list(recon.notes)

    pts = points_of(recon.vertices)
    collapsed = collapse_to_single_ring(pts)
    if len(collapsed) < len(pts):
        warnings.append(f"ring collapsed to first cycle ({len(pts)} -> {len(collapsed)} vertices)")
    deduped = drop_consecutive_duplicates(collapsed)
    if len(deduped) < len(collapsed):
        warnings.append(f"{len(collapsed) - len(deduped)} consecutive duplicate vertex(es) removed")
    repaired, fixes = repair_magnitudes(deduped, valid_range(registry, key))
    warnings.extend(fixes)

    vertices = to_vertices(repaired)
    ring = ring_report(repaired)

    coherence: List[EdgeCheck] = []
    if recon.strategy != "traverse" and len(repaired) >= 2:
        segments = extract_traverse_segments(text)
        if segments:
            coherence = traverse_coherence(repaired, segments)
            bad = [c for c in coherence if not c.coherent]
            if bad:
                warnings.append(f"{len(bad)}/{len(coherence)} edge(s) disagree with the stated azimuths/distances")

    return DocumentResult(
        source=source,
        doc_id=doc_id or detect_doc_id(text),
        pages=list(pages or []),
        projection=guess,
        projection_key=key,
        strategy=recon.strategy,
        vertices=vertices,
        ring=ring,
        coherence=coherence,
        warnings=warnings,
    )

def process_document(
    pdf_path: Path,
    registry: ProjectionRegistry,
    crs: Optional[str] = None,
    dpi: Optional[int] = None,
    lang: Optional[str] = None,
    use_ocr: bool = True,
    ocr_text_dir: Optional[Path] = None,
    log: Callable[[str], None] = lambda msg: None,
    audit: Optional[AuditLogger] = None,
) -> List[DocumentResult]:
    """
    One DocumentResult per matrícula found in the PDF (see split_pages_into_documents).
    A PDF that cannot be opened yields a single empty result instead of raising.
    """
    bridge = None
    if ocr_text_dir is not None:
        per_doc = ocr_text_dir / pdf_path.stem
        bridge = TextDirOcrBridge(per_doc if per_doc.is_dir() else ocr_text_dir)

    pages: List[PageText] = []
    try:
        src = PdfSource(pdf_path, dpi=dpi)
    except Exception as e:
        log(f"[doc] {pdf_path.name}: cannot open PDF: {e}")
        if audit:
            audit.log("document_error", {"source": str(pdf_path), "error": str(e)})
        result = build_result("", registry, source=str(pdf_path), crs=crs, log=log)
        result.warnings.insert(0, f"cannot open PDF: {e}")
        return [result]

    with src:
        log(f"[doc] {pdf_path.name}: {src.page_count} page(s)")
        for page in iter_page_texts(src, ocr_bridge=bridge, use_ocr=use_ocr, lang=lang, log=log):
            pages.append(page)
            if audit:
                audit.log("page_text", {"source": str(pdf_path), **page.to_json()})

    results: List[DocumentResult] = []
    for doc_id, doc_pages in split_pages_into_documents(pages):
        text = "\n".join(p.text for p in doc_pages)
        log(f"[doc] {pdf_path.name}: matrícula {doc_id}, page(s) {', '.join(str(p.page) for p in doc_pages)}")
        result = build_result(text, registry, source=str(pdf_path), pages=doc_pages, crs=crs, doc_id=doc_id, log=log)
        if audit:
            audit.log("projection", {
                "source": str(pdf_path), "doc_id": doc_id,
                **result.projection.to_json(), "used": result.projection_key,
            })
            audit.log("reconstruction", {
                "source": str(pdf_path),
                "doc_id": doc_id,
                "strategy": result.strategy,
                "vertices": len(result.vertices),
                "valid": result.ring.valid,
                "warnings": result.warnings,
            })
        results.append(result)
    return results


# -----------------------------
# Outputs
# -----------------------------
def _epsg_text(registry: ProjectionRegistry, key: Optional[str]) -> str:
    d = registry.get(key)
    return str(d.epsg) if d is not None and d.epsg else ""

def render_csv(result: DocumentResult, registry: ProjectionRegistry) -> str:
    epsg = _epsg_text(registry, result.projection_key)
    lines: List[str] = ["\ufeffsep=;"]
    lines.append(f"# MATRÍCULA;{result.doc_id}")
    lines.append(f"# EPSG;{epsg}")
    lines.append(f"# TOPOLOGY_VALID;{'SIM' if result.ring.valid else 'NÃO'}")
    lines.append(f"# AREA_M2;{result.ring.area_m2:.2f}")
    lines.append(f"# POLYGON_CLOSED;{'SIM' if result.ring.closed else 'NÃO'}")
    if result.coherence:
        good = sum(1 for c in result.coherence if c.coherent)
        lines.append(f"# MEMORIAL_COHERENCE;{good}/{len(result.coherence)}")
    lines.append("#")
    lines.append("Point_ID;Ordem;Norte_Y;Este_X;EPSG;Dist_M;Azimute_Deg;Qualidade;Notas")

    pts = points_of(result.vertices)
    edges = edge_measurements(pts)
    checks = {c.edge: c for c in result.coherence}
    for i, v in enumerate(result.vertices):
        quality, notes = "OK", ""
        c = checks.get(i)
        if c is not None and not c.coherent:
            quality = "AVISO"
            notes = f"Az {c.az_diff:.1f}° diff"
            if c.dist_diff >= 2:
                notes += f"; Dist {c.dist_diff:.1f}m diff"
        if i > 0 and pts[i] == pts[i - 1]:
            quality, notes = "ERRO", "Duplicado"
        d, az = edges[i]
        lines.append(";".join([
            v.id, str(v.order),
            f"{v.northing:.{COORD_DECIMALS}f}", f"{v.easting:.{COORD_DECIMALS}f}",
            epsg, fmt_m(d), f"{az:.{AZ_DECIMALS}f}", quality, notes,
        ]))
    return "\n".join(lines) + "\n"

def escape_xml(s: str) -> str:
    return (s.replace("&", "&amp;")
              .replace("<", "&lt;")
              .replace(">", "&gt;")
              .replace('"', "&quot;")
              .replace("'", "&apos;"))

def render_svg(result: DocumentResult, out_path: Path) -> None:
    pts = points_of(result.vertices)
    if not pts:
        raise RuntimeError("No geometry to render.")

    min_e = min(p.e for p in pts)
    max_e = max(p.e for p in pts)
    min_n = min(p.n for p in pts)
    max_n = max(p.n for p in pts)
    width = max_e - min_e
    height = max_n - min_n
    pad = max(width, height) * 0.05 + 10.0
    vb_min_e = min_e - pad
    vb_min_n = min_n - pad
    vb_w = width + 2 * pad
    vb_h = height + 2 * pad
    label_size = max(vb_w, vb_h) / 80.0

    def svg_xy(p: Pt) -> Tuple[float, float]:
        # flip N so north is up; keep the viewBox origin at 0 on the y axis
        return p.e - vb_min_e, (vb_min_n + vb_h) - p.n

    parts = []
    for i, p in enumerate(close_ring(pts)):
        x, y = svg_xy(p)
        parts.append(("M" if i == 0 else "L") + f" {x:.3f} {y:.3f}")
    parts.append("Z")

    svg = []
    svg.append('<?xml version="1.0" encoding="UTF-8"?>')
    svg.append(f'<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 {vb_w:.3f} {vb_h:.3f}">')
    svg.append('<style>')
    svg.append(f'.ring{{fill:#dbe7f5;fill-opacity:0.4;stroke:#1f3b63;stroke-width:{label_size / 8:.3f};}}')
    svg.append(f'.label{{fill:#1f3b63;font-family:Arial, sans-serif;font-size:{label_size:.3f}px;}}')
    svg.append('</style>')
    svg.append(f'<path class="ring" d="{" ".join(parts)}"/>')
    for v in result.vertices:
        x, y = svg_xy(v.pt)
        svg.append(f'<text class="label" x="{x:.3f}" y="{y:.3f}">{escape_xml(v.id)}</text>')
    cx, cy = centroid(pts)
    x, y = svg_xy(Pt(cx, cy))
    svg.append(f'<text class="label" x="{x:.3f}" y="{y:.3f}">{escape_xml(result.doc_id)}</text>')
    svg.append("</svg>")
    write_text(out_path, "\n".join(svg))

def render_dxf_minimal(result: DocumentResult, out_path: Path) -> None:
    entities: List[str] = []

    def add_line(a: Pt, b: Pt, layer: str):
        entities.extend([
            "0", "LINE",
            "8", layer,
            "10", f"{a.e:.6f}",
            "20", f"{a.n:.6f}",
            "11", f"{b.e:.6f}",
            "21", f"{b.n:.6f}",
        ])

    def add_text(p: Pt, text: str, height: float, layer: str):
        entities.extend([
            "0", "TEXT",
            "8", layer,
            "10", f"{p.e:.6f}",
            "20", f"{p.n:.6f}",
            "40", f"{height:.6f}",
            "1", text,
        ])

    pts = close_ring(points_of(result.vertices))
    for i in range(len(pts) - 1):
        add_line(pts[i], pts[i + 1], "PERIMETRO")
    for v in result.vertices:
        add_text(v.pt, v.id, height=1.5, layer="VERTICES")

    dxf = []
    dxf.extend(["0", "SECTION", "2", "HEADER"])
    dxf.extend(["9", "$ACADVER", "1", "AC1015"])  # AutoCAD 2000
    dxf.extend(["0", "ENDSEC"])
    dxf.extend(["0", "SECTION", "2", "ENTITIES"])
    dxf.extend(entities)
    dxf.extend(["0", "ENDSEC", "0", "EOF"])
    write_text(out_path, "\n".join(dxf))

def render_table(rows: List[List[str]]) -> str:
    return tabulate(rows[1:], headers=rows[0], tablefmt="github")

def vertex_rows(vertices: Sequence[Vertex]) -> List[List[str]]:
    rows = [["id", "order", "N (Y)", "E (X)", "dist_m", "azimuth"]]
    edges = edge_measurements(points_of(vertices))
    for v, (d, az) in zip(vertices, edges):
        rows.append([
            v.id, str(v.order),
            f"{v.northing:.{COORD_DECIMALS}f}", f"{v.easting:.{COORD_DECIMALS}f}",
            fmt_m(d), f"{az:.{AZ_DECIMALS}f}",
        ])
    return rows

def report_markdown(result: DocumentResult, registry: ProjectionRegistry) -> str:
    lines: List[str] = []
    lines.append(f"# Extraction Report: {result.doc_id}")
    lines.append("")
    lines.append(f"- Generated: {now_iso()}")
    lines.append(f"- Source: `{result.source}`")
    lines.append(f"- Projection: {result.projection_key or '?'} (EPSG {_epsg_text(registry, result.projection_key) or '-'})")
    lines.append(f"- Detection: {result.projection.confidence}; {result.projection.reason}")
    lines.append(f"- Strategy: {result.strategy}")
    lines.append("")

    lines.append("## A) PAGES")
    lines.append("")
    rows = [["page", "method", "chars"]]
    for p in result.pages:
        rows.append([str(p.page), p.method, str(len(p.text))])
    lines.append(render_table(rows))
    lines.append("")

    lines.append("## B) VERTICES")
    lines.append("")
    if result.vertices:
        lines.append(render_table(vertex_rows(result.vertices)))
    else:
        lines.append("_no vertices extracted_")
    lines.append("")

    ring = result.ring
    lines.append("## C) RING")
    lines.append("")
    rows = [["vertices", "area (m²)", "perimeter (m)", "closure gap (m)", "closed", "orientation", "valid"]]
    rows.append([
        str(ring.vertex_count), fmt_m(ring.area_m2), fmt_m(ring.perimeter_m), fmt_m(ring.closure_gap_m, 3),
        "yes" if ring.closed else "no",
        "-" if ring.ccw is None else ("CCW" if ring.ccw else "CW"),
        "PASS" if ring.valid else "FAIL",
    ])
    lines.append(render_table(rows))
    lines.append("")
    for e in ring.errors:
        lines.append(f"- ERROR: {e}")
    if ring.errors:
        lines.append("")

    if result.coherence:
        lines.append("## D) COHERENCE WITH STATED AZIMUTHS/DISTANCES")
        lines.append("")
        rows = [["edge", "stated az", "calc az", "Δaz", "stated dist", "calc dist", "Δdist", "ok"]]
        for c in result.coherence:
            rows.append([
                str(c.edge + 1), f"{c.stated_az:.4f}", f"{c.calc_az:.4f}", f"{c.az_diff:.2f}",
                fmt_m(c.stated_dist), fmt_m(c.calc_dist), fmt_m(c.dist_diff),
                "yes" if c.coherent else "NO",
            ])
        lines.append(render_table(rows))
        lines.append("")

    warnings = list(result.warnings) + list(ring.warnings)
    if warnings:
        lines.append("## Warnings")
        lines.append("")
        for w in warnings:
            lines.append(f"- {w}")
        lines.append("")

    return "\n".join(lines)

def write_outputs(
    result: DocumentResult,
    out_dir: Path,
    registry: ProjectionRegistry,
    svg: bool = False,
    dxf: bool = False,
    audit: Optional[AuditLogger] = None,
) -> List[Path]:
    ensure_dir(out_dir)
    stem = sanitize_name(f"matricula_{result.doc_id}")
    written: List[Path] = []

    p = out_dir / "result.json"
    write_json(p, result.to_json())
    written.append(p)

    if result.vertices:
        p = out_dir / f"{stem}.csv"
        write_text(p, render_csv(result, registry))
        written.append(p)

    d = registry.get(result.projection_key)
    if d is not None:
        p = out_dir / f"{stem}.prj"
        write_text(p, d.wkt)
        written.append(p)

    if svg and result.vertices:
        p = out_dir / f"{stem}.svg"
        render_svg(result, p)
        written.append(p)
    if dxf and result.vertices:
        p = out_dir / f"{stem}.dxf"
        render_dxf_minimal(result, p)
        written.append(p)

    p = out_dir / "report.md"
    write_text(p, report_markdown(result, registry))
    written.append(p)

    if audit:
        for w in written:
            audit.log("file_written", {"source": result.source, "path": str(w)})
    return written


# -----------------------------
# Commands
# -----------------------------
def _check_crs(registry: ProjectionRegistry, key: Optional[str]) -> None:
    if key and key not in registry:
        raise SystemExit(f"Unknown projection key: {key} (see: pdf-to-gis crs-list)")

def cmd_extract(args: argparse.Namespace) -> None:
    registry = ProjectionRegistry.default()
    _check_crs(registry, args.crs)
    pdfs = [Path(p) for p in args.pdfs]
    for p in pdfs:
        if not p.exists():
            raise SystemExit(f"Input not found: {p}")

    out_root = ensure_dir(args.out)
    audit = AuditLogger(out_root / "audit.ndjson")
    ocr_dir = Path(args.ocr_text_dir) if args.ocr_text_dir else None
    dpi = resolve_dpi(args.dpi)
    lang = resolve_ocr_lang(args.lang)
    audit.log("run_start", {"inputs": [str(p) for p in pdfs], "crs": args.crs, "dpi": dpi, "lang": lang, "ocr": not args.no_ocr})

    failures: List[str] = []
    for pdf in pdfs:
        results = process_document(
            pdf, registry, crs=args.crs, dpi=dpi, lang=lang, use_ocr=not args.no_ocr,
            ocr_text_dir=ocr_dir, log=print, audit=audit,
        )
        for result in results:
            out_dir = out_root / sanitize_name(pdf.stem) / sanitize_name(result.doc_id)
            written = write_outputs(result, out_dir, registry, svg=args.svg, dxf=args.dxf, audit=audit)
            status = "OK" if result.ok and result.ring.valid else ("CHECK" if result.ok else "NO RING")
            print(
                f"[done] {pdf.name}: id={result.doc_id} crs={result.projection_key} strategy={result.strategy} "
                f"vertices={len(result.vertices)} area={result.ring.area_m2:.2f}m2 {status} -> {written[0].parent}"
            )
            audit.log("document_done", {"source": str(pdf), "doc_id": result.doc_id, "status": status})
            if not result.ok:
                failures.append(f"{pdf.name}#{result.doc_id}")

    if args.strict and failures:
        raise SystemExit(f"No usable ring for: {', '.join(failures)}")

def cmd_parse(args: argparse.Namespace) -> None:
    registry = ProjectionRegistry.default()
    _check_crs(registry, args.crs)
    path = Path(args.textfile)
    if not path.exists():
        raise SystemExit(f"Input not found: {path}")
    text = path.read_text(encoding="utf-8", errors="replace")

    guess, hint = choose_projection(text, registry, args.crs)
    print(f"[crs] {guess.key} ({guess.confidence}): {guess.reason}")
    vertices = parse_vertices(text, hint, registry=registry, log=print)
    print(f"[parse] vertices={len(vertices)}")
    if vertices:
        print(render_table(vertex_rows(vertices)))
    if len(vertices) < 3:
        print("[warn] fewer than 3 vertices; no usable ring")

def cmd_crs_list(args: argparse.Namespace) -> None:
    registry = ProjectionRegistry.default()
    rows = [["key", "name", "epsg", "zone"]]
    for d in registry:
        rows.append([d.key, d.name, str(d.epsg or "-"), f"{d.zone}S" if d.zone else "-"])
    print(render_table(rows))


# -----------------------------
# CLI plumbing
# -----------------------------
def build_cli() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pdf-to-gis", description="Extract georeferenced polygons from Brazilian survey PDFs.")
    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("extract", help="Process PDFs into vertex CSV/PRJ/report outputs.")
    s.add_argument("pdfs", nargs="+", help="Input PDF path(s).")
    s.add_argument("--out", required=True, help="Output directory (<out>/<pdf stem>/<doc id>/ per matrícula).")
    s.add_argument("--crs", default=None, help="Projection key (overrides detection; see crs-list).")
    s.add_argument("--dpi", type=int, default=None, help="Render DPI for OCR (env PDF2GIS_DPI, default 300).")
    s.add_argument("--lang", default=None, help="Tesseract language (env PDF2GIS_OCR_LANG, default por).")
    s.add_argument("--no-ocr", action="store_true", help="Never OCR; use the text layer only.")
    s.add_argument("--ocr-text-dir", default=None, help="Directory of pre-computed page_NNN.txt OCR files.")
    s.add_argument("--svg", action="store_true")
    s.add_argument("--dxf", action="store_true")
    s.add_argument("--strict", action="store_true", help="Exit non-zero if any document yields no ring.")
    s.set_defaults(func=cmd_extract)

    s = sub.add_parser("parse", help="Run the coordinate parser over a plain-text file.")
    s.add_argument("textfile", help="UTF-8 text file (e.g. a memorial descritivo).")
    s.add_argument("--crs", default=None, help="Projection key hint.")
    s.set_defaults(func=cmd_parse)

    s = sub.add_parser("crs-list", help="List supported projections.")
    s.set_defaults(func=cmd_crs_list)

    return p

def main(argv: Optional[List[str]] = None) -> None:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_cli()
    args = parser.parse_args(argv)
    args.func(args)

if __name__ == "__main__":
    main()
