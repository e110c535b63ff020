import contextlib
import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import pdf_to_gis as p2g
from crs_registry import GeoTransformer, ProjectionRegistry
from page_text import PageText


MEMORIAL = (
    "MATRÍCULA Nº 12.345\n"
    "Inicia-se no vértice V001 de coordenadas E=500000,000 m e N=7200000,000 m; "
    "deste segue com azimute 90°00'00\" e distância de 100,00 m até o vértice V002 de coordenadas "
    "E=500100,000 m e N=7200000,000 m; "
    "deste segue com azimute 0°00'00\" e distância de 100,00 m até o vértice V003 de coordenadas "
    "E=500100,000 m e N=7200100,000 m; "
    "deste segue com azimute 270°00'00\" e distância de 100,00 m até o vértice V004 de coordenadas "
    "E=500000,000 m e N=7200100,000 m; "
    "deste segue com azimute 180°00'00\" e distância de 100,00 m até o ponto inicial."
)

TRAVERSE_TEXT = (
    "Inicia-se no vértice de coordenadas E=100,00 m e N=200,00 m; "
    "Azimute 30°00'00\" E, distância 50 m; "
    "Azimute 150°00'00\" E, distância 50 m"
)

LATLON_WGS84 = (
    "Coordenadas geodésicas, Datum WGS 84. "
    "P1: 25°25'40,12\" S, 49°16'23,45\" O; "
    "P2: 25°25'45,00\" S, 49°16'20,00\" O; "
    "P3: 25°25'50,00\" S, 49°16'30,00\" O"
)


def triangle_page(doc_id, e0):
    return (
        f"MATRÍCULA Nº {doc_id}\n"
        f"Inicia-se no vértice V001 de coordenadas E={e0},000 m e N=7200000,000 m; "
        f"segue até o vértice V002 de coordenadas E={e0 + 100},000 m e N=7200000,000 m; "
        f"segue até o vértice V003 de coordenadas E={e0},000 m e N=7200100,000 m."
    )


def fake_pdf(pages, broken=()):
    class FakePdf:
        def __init__(self, path, dpi=None):
            if Path(path).name in broken:
                raise ValueError("No /Root object! - Is this really a PDF?")
            self.path = path

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return None

        @property
        def page_count(self):
            return len(pages)

        def page_text(self, page):
            return pages[page - 1]

        def render_page(self, page):
            raise AssertionError("rendering not expected with --no-ocr")

    return FakePdf


class DocIdTests(unittest.TestCase):
    def test_patterns(self):
        self.assertEqual(p2g.detect_doc_id("MATRÍCULA Nº 12.345"), "12345")
        self.assertEqual(p2g.detect_doc_id("Matrícula nº 7.654 - Livro 2"), "7654")
        self.assertEqual(p2g.detect_doc_id("MAT. Nº 0098"), "98")
        self.assertEqual(p2g.detect_doc_id("PROTOCOLO Nº 555"), "555")

    def test_header_only(self):
        self.assertEqual(p2g.detect_doc_id("x" * 2100 + " MATRÍCULA Nº 1"), p2g.NO_DOC_ID)
        self.assertEqual(p2g.detect_doc_id(""), "SEM_ID")

    def test_first_pattern_wins(self):
        self.assertEqual(p2g.detect_doc_id("PROTOCOLO Nº 9 ... MATRÍCULA Nº 10"), "10")


class SplitDocumentsTests(unittest.TestCase):
    def pages(self, *texts):
        return [PageText(i + 1, t, "selectable") for i, t in enumerate(texts)]

    def test_one_document_per_matricula(self):
        docs = p2g.split_pages_into_documents(self.pages(
            "MATRÍCULA Nº 1.234 folha 1", "continuação sem cabeçalho", "MATRÍCULA Nº 5678", "fim",
        ))
        self.assertEqual([(d, [p.page for p in ps]) for d, ps in docs], [("1234", [1, 2]), ("5678", [3, 4])])

    def test_leading_pages_join_first_document(self):
        docs = p2g.split_pages_into_documents(self.pages("capa", "MATRÍCULA Nº 77", "texto"))
        self.assertEqual([(d, [p.page for p in ps]) for d, ps in docs], [("77", [1, 2, 3])])

    def test_same_id_merged_across_other_document(self):
        docs = p2g.split_pages_into_documents(self.pages(
            "MATRÍCULA Nº 1", "MATRÍCULA Nº 2", "MATRÍCULA Nº 1 (continuação)",
        ))
        self.assertEqual([(d, [p.page for p in ps]) for d, ps in docs], [("1", [1, 3]), ("2", [2])])

    def test_without_ids(self):
        docs = p2g.split_pages_into_documents(self.pages("a", "b"))
        self.assertEqual([(d, len(ps)) for d, ps in docs], [("SEM_ID", 2)])
        self.assertEqual(p2g.split_pages_into_documents([]), [("SEM_ID", [])])


class ProcessDocumentTests(unittest.TestCase):
    def setUp(self):
        self.registry = ProjectionRegistry.default()

    def test_two_matriculas_in_one_pdf_give_two_rings(self):
        pages = [triangle_page("1234", 500000), triangle_page("5678", 600000)]
        with mock.patch("pdf_to_gis.PdfSource", fake_pdf(pages)):
            results = p2g.process_document(Path("lote.pdf"), self.registry, crs="SIRGAS2000_22S", use_ocr=False)
        self.assertEqual([r.doc_id for r in results], ["1234", "5678"])
        for r in results:
            self.assertEqual(len(r.vertices), 3)
            self.assertTrue(r.ring.valid)
            self.assertAlmostEqual(r.ring.area_m2, 5000.0, places=3)
        self.assertEqual([p.page for p in results[1].pages], [2])
        self.assertAlmostEqual(results[1].vertices[0].easting, 600000.0)

    def test_unreadable_pdf_yields_empty_result(self):
        msgs = []
        with tempfile.TemporaryDirectory() as d:
            bad = Path(d) / "bad.pdf"
            bad.write_bytes(b"not a pdf")
            audit = p2g.AuditLogger(Path(d) / "audit.ndjson")
            results = p2g.process_document(bad, self.registry, use_ocr=False, log=msgs.append, audit=audit)
            events = [json.loads(ln) for ln in (Path(d) / "audit.ndjson").read_text(encoding="utf-8").splitlines()]
        self.assertEqual(len(results), 1)
        r = results[0]
        self.assertEqual(r.pages, [])
        self.assertEqual(r.vertices, [])
        self.assertFalse(r.ok)
        self.assertEqual(r.doc_id, "SEM_ID")
        self.assertTrue(r.warnings[0].startswith("cannot open PDF"))
        self.assertTrue(any("cannot open PDF" in m for m in msgs))
        self.assertEqual([e["event"] for e in events], ["document_error"])


class BuildResultTests(unittest.TestCase):
    def setUp(self):
        self.registry = ProjectionRegistry.default()

    def test_memorial_with_coherent_calls(self):
        r = p2g.build_result(MEMORIAL, self.registry, crs="SIRGAS2000_22S")
        self.assertTrue(r.ok)
        self.assertEqual(r.strategy, "baseline")
        self.assertEqual(r.doc_id, "12345")
        self.assertEqual(r.projection_key, "SIRGAS2000_22S")
        self.assertEqual(r.projection.confidence, "explicit")
        self.assertEqual(len(r.vertices), 4)
        self.assertTrue(r.ring.valid)
        self.assertAlmostEqual(r.ring.area_m2, 10000.0, places=3)
        self.assertEqual(len(r.coherence), 3)
        self.assertTrue(all(c.coherent for c in r.coherence))
        self.assertEqual(r.warnings, [])

    def test_incoherent_call_flagged(self):
        text = MEMORIAL.replace(
            "azimute 0°00'00\" e distância de 100,00 m", "azimute 0°00'00\" e distância de 110,00 m")
        r = p2g.build_result(text, self.registry, crs="SIRGAS2000_22S")
        self.assertFalse(r.coherence[1].coherent)
        self.assertTrue(any("disagree" in w for w in r.warnings))
        csv = p2g.render_csv(r, self.registry)
        row = [ln for ln in csv.splitlines() if ln.startswith("V002;")][0]
        self.assertIn(";AVISO;", row)
        self.assertIn("Dist 10.0m diff", row)
        self.assertIn("# MEMORIAL_COHERENCE;2/3", csv)

    def test_traverse_in_local_grid(self):
        r = p2g.build_result(TRAVERSE_TEXT, self.registry, crs="LOCAL")
        self.assertEqual(r.strategy, "traverse")
        self.assertEqual(r.projection_key, "LOCAL")
        self.assertEqual(r.coherence, [])
        self.assertAlmostEqual(r.ring.area_m2, 1082.5318, places=3)
        self.assertEqual(r.doc_id, "SEM_ID")

    def test_magnitude_repair_reported(self):
        text = MEMORIAL.replace("E=500100,000 m e N=7200100,000 m", "E=5001000,00 m e N=7200100,000 m")
        r = p2g.build_result(text, self.registry, crs="SIRGAS2000_22S")
        self.assertAlmostEqual(r.vertices[2].easting, 500100.0)
        self.assertTrue(any("easting rescaled" in w for w in r.warnings))

    def test_no_ring(self):
        r = p2g.build_result("Nada aproveitável neste texto.", self.registry)
        self.assertFalse(r.ok)
        self.assertEqual(r.strategy, "partial")
        self.assertFalse(r.ring.valid)
        self.assertEqual(r.projection.confidence, "low")

    def test_wgs84_datum_with_utm_pairs_keeps_metric_zone(self):
        r = p2g.build_result("Datum WGS 84.\n" + MEMORIAL, self.registry)
        self.assertEqual(r.projection.key, "WGS84")
        self.assertEqual(r.projection_key, "SIRGAS2000_23S")
        self.assertEqual(r.strategy, "baseline")
        self.assertAlmostEqual(r.vertices[0].easting, 500000.0)
        csv = p2g.render_csv(r, self.registry)
        self.assertIn("# EPSG;31983", csv)
        self.assertNotIn("4326", csv)

    def test_wgs84_datum_with_latlon_pairs_projects_to_utm(self):
        transformer = mock.Mock(spec=GeoTransformer)
        transformer.to_projected.side_effect = [
            (672000.0, 7186000.0), (672100.0, 7186000.0), (672100.0, 7186100.0),
        ]
        r = p2g.build_result(LATLON_WGS84, self.registry, transformer=transformer)
        self.assertEqual(r.projection.key, "WGS84")
        self.assertEqual(r.strategy, "latlon")
        self.assertEqual(r.projection_key, "SIRGAS2000_22S")
        self.assertEqual(transformer.to_projected.call_args[0][2].epsg, 31982)
        self.assertAlmostEqual(r.vertices[0].easting, 672000.0)
        self.assertTrue(r.ring.valid)
        self.assertAlmostEqual(r.ring.area_m2, 5000.0, places=3)

    def test_wgs84_choose_projection_never_hints_geographic(self):
        guess, hint = p2g.choose_projection("WGS-84, sem coordenadas", self.registry)
        self.assertEqual(guess.key, "WGS84")
        self.assertIsNone(hint)
        guess, hint = p2g.choose_projection(LATLON_WGS84, self.registry)
        self.assertEqual(hint, "SIRGAS2000_22S")

    def test_choose_projection(self):
        guess, hint = p2g.choose_projection("nada", self.registry)
        self.assertEqual(guess.key, "SIRGAS2000_22S")
        self.assertIsNone(hint)
        guess, hint = p2g.choose_projection("SIRGAS 2000 fuso 23", self.registry)
        self.assertEqual(hint, "SIRGAS2000_23S")
        guess, hint = p2g.choose_projection("fuso 23", self.registry, "SAD69_22S")
        self.assertEqual((guess.key, hint), ("SAD69_22S", "SAD69_22S"))


class OutputTests(unittest.TestCase):
    def setUp(self):
        self.registry = ProjectionRegistry.default()
        self.result = p2g.build_result(MEMORIAL, self.registry, source="m.pdf", crs="SIRGAS2000_22S")

    def test_csv_layout(self):
        lines = p2g.render_csv(self.result, self.registry).splitlines()
        self.assertEqual(lines[0], "\ufeffsep=;")
        self.assertIn("# MATRÍCULA;12345", lines)
        self.assertIn("# EPSG;31982", lines)
        self.assertIn("# TOPOLOGY_VALID;SIM", lines)
        self.assertIn("# AREA_M2;10000.00", lines)
        header = lines.index("Point_ID;Ordem;Norte_Y;Este_X;EPSG;Dist_M;Azimute_Deg;Qualidade;Notas")
        self.assertEqual(lines[header + 1], "V001;1;7200000.000;500000.000;31982;100.00;90.0000;OK;")
        self.assertEqual(lines[header + 4], "V004;4;7200100.000;500000.000;31982;100.00;180.0000;OK;")

    def test_write_outputs(self):
        with tempfile.TemporaryDirectory() as d:
            audit = p2g.AuditLogger(Path(d) / "audit.ndjson")
            written = p2g.write_outputs(self.result, Path(d) / "m", self.registry, svg=True, dxf=True, audit=audit)
            names = [p.name for p in written]
            self.assertEqual(names, [
                "result.json", "matricula_12345.csv", "matricula_12345.prj",
                "matricula_12345.svg", "matricula_12345.dxf", "report.md",
            ])
            data = json.loads((Path(d) / "m" / "result.json").read_text(encoding="utf-8"))
            self.assertEqual(data["strategy"], "baseline")
            self.assertEqual(data["projection"]["used"], "SIRGAS2000_22S")
            self.assertEqual(len(data["vertices"]), 4)
            prj = (Path(d) / "m" / "matricula_12345.prj").read_text(encoding="utf-8")
            self.assertTrue(prj.startswith('PROJCS["SIRGAS 2000 / UTM zone 22S"'))
            svg = (Path(d) / "m" / "matricula_12345.svg").read_text(encoding="utf-8")
            self.assertTrue(svg.startswith("<?xml"))
            self.assertIn(">V003</text>", svg)
            dxf = (Path(d) / "m" / "matricula_12345.dxf").read_text(encoding="utf-8")
            self.assertEqual(dxf.count("PERIMETRO"), 4)
            self.assertTrue(dxf.endswith("EOF"))
            report = (Path(d) / "m" / "report.md").read_text(encoding="utf-8")
            self.assertIn("## B) VERTICES", report)
            self.assertIn("## D) COHERENCE", report)
            events = [json.loads(ln)["event"] for ln in (Path(d) / "audit.ndjson").read_text(encoding="utf-8").splitlines()]
            self.assertEqual(events, ["file_written"] * 6)

    def test_no_vertices_writes_json_and_report_only(self):
        r = p2g.build_result("nada", self.registry, crs="LOCAL")
        with tempfile.TemporaryDirectory() as d:
            written = p2g.write_outputs(r, Path(d), self.registry, svg=True)
            self.assertEqual([p.name for p in written], ["result.json", "matricula_SEM_ID.prj", "report.md"])
            self.assertIn("_no vertices extracted_", (Path(d) / "report.md").read_text(encoding="utf-8"))

    def test_audit_logger_appends(self):
        with tempfile.TemporaryDirectory() as d:
            audit = p2g.AuditLogger(Path(d) / "sub" / "audit.ndjson")
            audit.log("a", {"x": 1})
            audit.log("b", {"nome": "matrícula"})
            recs = [json.loads(ln) for ln in (Path(d) / "sub" / "audit.ndjson").read_text(encoding="utf-8").splitlines()]
        self.assertEqual([r["event"] for r in recs], ["a", "b"])
        self.assertEqual(recs[1]["payload"], {"nome": "matrícula"})
        self.assertIn("ts", recs[0])

    def test_sanitize_name(self):
        self.assertEqual(p2g.sanitize_name("matricula 12/34"), "matricula_12_34")
        self.assertEqual(p2g.sanitize_name("///"), "documento")


class CliTests(unittest.TestCase):
    def run_cli(self, argv):
        buf = io.StringIO()
        with contextlib.redirect_stdout(buf):
            p2g.main(argv)
        return buf.getvalue()

    def test_crs_list(self):
        out = self.run_cli(["crs-list"])
        self.assertIn("SIRGAS2000_22S", out)
        self.assertIn("31982", out)
        self.assertIn("LOCAL", out)

    def test_parse_text_file(self):
        with tempfile.TemporaryDirectory() as d:
            f = Path(d) / "memorial.txt"
            f.write_text(TRAVERSE_TEXT, encoding="utf-8")
            out = self.run_cli(["parse", str(f), "--crs", "LOCAL"])
        self.assertIn("[parse] vertices=3", out)
        self.assertIn("V003", out)

    def test_unknown_crs(self):
        with self.assertRaises(SystemExit):
            self.run_cli(["parse", "x.txt", "--crs", "NOPE"])
        with self.assertRaises(SystemExit):
            self.run_cli(["extract", "x.pdf", "--out", "out", "--crs", "NOPE"])

    def test_missing_input(self):
        with tempfile.TemporaryDirectory() as d:
            with self.assertRaises(SystemExit):
                self.run_cli(["extract", str(Path(d) / "missing.pdf"), "--out", d])

    def test_extract_end_to_end(self):
        with tempfile.TemporaryDirectory() as d:
            pdf = Path(d) / "doc.pdf"
            pdf.write_bytes(b"%PDF-1.4\n")
            out = Path(d) / "out"
            with mock.patch("pdf_to_gis.PdfSource", fake_pdf([MEMORIAL, ""])):
                stdout = self.run_cli([
                    "extract", str(pdf), "--out", str(out), "--no-ocr", "--crs", "SIRGAS2000_22S", "--svg",
                ])
            self.assertIn("[done] doc.pdf: id=12345", stdout)
            self.assertTrue((out / "doc" / "12345" / "matricula_12345.csv").exists())
            self.assertTrue((out / "doc" / "12345" / "matricula_12345.svg").exists())
            data = json.loads((out / "doc" / "12345" / "result.json").read_text(encoding="utf-8"))
            self.assertEqual([p["method"] for p in data["pages"]], ["selectable", "selectable_fallback"])
            events = [json.loads(ln)["event"] for ln in (out / "audit.ndjson").read_text(encoding="utf-8").splitlines()]
            self.assertEqual(events[0], "run_start")
            self.assertEqual(events.count("page_text"), 2)
            self.assertIn("reconstruction", events)
            self.assertEqual(events[-1], "document_done")

    def test_extract_continues_after_unreadable_pdf(self):
        with tempfile.TemporaryDirectory() as d:
            bad, good = Path(d) / "bad.pdf", Path(d) / "lote.pdf"
            bad.write_bytes(b"not a pdf")
            good.write_bytes(b"%PDF-1.4\n")
            out = Path(d) / "out"
            pages = [triangle_page("1234", 500000), triangle_page("5678", 600000)]
            with mock.patch("pdf_to_gis.PdfSource", fake_pdf(pages, broken={"bad.pdf"})):
                stdout = self.run_cli([
                    "extract", str(bad), str(good), "--out", str(out), "--no-ocr", "--crs", "SIRGAS2000_22S",
                ])
            self.assertIn("[done] bad.pdf: id=SEM_ID", stdout)
            self.assertIn("NO RING", stdout)
            self.assertTrue((out / "bad" / "SEM_ID" / "result.json").exists())
            self.assertTrue((out / "lote" / "1234" / "matricula_1234.csv").exists())
            self.assertTrue((out / "lote" / "5678" / "matricula_5678.csv").exists())
            events = [json.loads(ln)["event"] for ln in (out / "audit.ndjson").read_text(encoding="utf-8").splitlines()]
            self.assertIn("document_error", events)
            self.assertEqual(events.count("document_done"), 3)

    def test_strict_fails_without_ring(self):
        with tempfile.TemporaryDirectory() as d:
            pdf = Path(d) / "vazio.pdf"
            pdf.write_bytes(b"%PDF-1.4\n")
            with mock.patch("pdf_to_gis.PdfSource", fake_pdf(["sem coordenadas"])):
                with self.assertRaises(SystemExit):
                    self.run_cli(["extract", str(pdf), "--out", str(Path(d) / "out"), "--no-ocr", "--strict"])


if __name__ == "__main__":
    unittest.main()
