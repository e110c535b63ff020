#!/usr/bin/env python3
"""
page_text.py — Per-page text acquisition for survey PDFs (selectable text vs OCR)

WHAT THIS MODULE DOES
- Pulls the machine-readable text layer of each page (pdfplumber).
- Decides whether that text is good enough to carry coordinates; if not, OCRs the page:
    * an external OCR bridge (page number -> text), e.g. pre-computed page_001.txt files, or
    * render the page (pdf2image) -> base64 PNG -> image OCR bridge; the default bridge decodes it,
      cleans it up with OpenCV (gray, CLAHE, Otsu) and runs Tesseract (pytesseract).
- When neither candidate passes, the longer one is kept and tagged as a fallback.

Pages are handled one at a time, in order; only one rendered page image is alive at once.

Install:
  pip install pdfplumber pdf2image pytesseract Pillow opencv-python-headless numpy
  (plus the system tesseract binary with the 'por' language pack, and poppler for pdf2image)

Env overrides:
  PDF2GIS_OCR_LANG        Tesseract language (default: por)
  PDF2GIS_DPI             render DPI for OCR (default: 300)
  PDF2GIS_TESSERACT_CMD   path to the tesseract executable
"""

from __future__ import annotations

import base64
import io
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Union


SUFFICIENT_TEXT_LEN = 30
MIN_E_DIGITS = 4
MIN_N_DIGITS = 5

DEFAULT_DPI = 300
DEFAULT_OCR_LANG = "por"
TESSERACT_CONFIG = "--oem 3 --psm 6"

METHOD_SELECTABLE = "selectable"
METHOD_OCR = "ocr"
METHOD_OCR_FALLBACK = "ocr_fallback"
METHOD_SELECTABLE_FALLBACK = "selectable_fallback"

LogFn = Callable[[str], None]
OcrBridge = Callable[[int], Optional[str]]
ImageOcrBridge = Callable[[str], Optional[str]]

def _noop(msg: str) -> None:
    return None


# -----------------------------
# Config
# -----------------------------
def resolve_ocr_lang(cli_value: Optional[str] = None) -> str:
    if cli_value:
        return cli_value
    return os.environ.get("PDF2GIS_OCR_LANG", "").strip() or DEFAULT_OCR_LANG

def resolve_dpi(cli_value: Optional[int] = None) -> int:
    if cli_value:
        return int(cli_value)
    raw = os.environ.get("PDF2GIS_DPI", "").strip()
    if raw.isdigit() and int(raw) > 0:
        return int(raw)
    return DEFAULT_DPI

def resolve_tesseract_cmd() -> Optional[str]:
    return os.environ.get("PDF2GIS_TESSERACT_CMD", "").strip() or None


# -----------------------------
# Sufficiency
# -----------------------------
E_TOKEN_RE = re.compile(r"(?<![A-Za-z])[EX]\s*[=:]?\s*(\d[\d.,]*)")
N_TOKEN_RE = re.compile(r"(?<![A-Za-z])[NY]\s*[=:]?\s*(\d[\d.,]*)")

def _has_token(rx: "re.Pattern[str]", text: str, min_digits: int) -> bool:
    return any(sum(ch.isdigit() for ch in m.group(1)) >= min_digits for m in rx.finditer(text))

def is_sufficient(text: Optional[str]) -> bool:
    """Long enough, and shows both an E/X-like (>= 4 digits) and an N/Y-like (>= 5 digits) token."""
    t = (text or "").strip()
    if len(t) <= SUFFICIENT_TEXT_LEN:
        return False
    return _has_token(E_TOKEN_RE, t, MIN_E_DIGITS) and _has_token(N_TOKEN_RE, t, MIN_N_DIGITS)


# -----------------------------
# Page text selection
# -----------------------------
@dataclass(frozen=True)
class PageText:
    page: int
    text: str
    method: str

    def to_json(self) -> dict:
        return {"page": self.page, "method": self.method, "chars": len(self.text)}

def select_page_text(
    page: int,
    extract_text: Callable[[], Optional[str]],
    ocr_bridge: Optional[OcrBridge] = None,
    render_ocr: Optional[Callable[[], Optional[str]]] = None,
    log: LogFn = _noop,
) -> PageText:
    """
    Selectable text if sufficient; else OCR (bridge first, render+OCR callback otherwise)
    if sufficient; else whichever candidate is longer, tagged as a fallback.
    Collaborator failures degrade to empty text.
    """
    try:
        selectable = extract_text() or ""
    except Exception as e:
        log(f"[page {page}] text extraction failed: {e}")
        selectable = ""

    if is_sufficient(selectable):
        log(f"[page {page}] method={METHOD_SELECTABLE} chars={len(selectable)}")
        return PageText(page, selectable, METHOD_SELECTABLE)

    ocr_text = ""
    try:
        if ocr_bridge is not None:
            ocr_text = ocr_bridge(page) or ""
        elif render_ocr is not None:
            ocr_text = render_ocr() or ""
    except Exception as e:
        log(f"[page {page}] OCR failed: {e}")
        ocr_text = ""

    if is_sufficient(ocr_text):
        log(f"[page {page}] method={METHOD_OCR} chars={len(ocr_text)}")
        return PageText(page, ocr_text, METHOD_OCR)

    if len(ocr_text.strip()) > len(selectable.strip()):
        log(f"[page {page}] method={METHOD_OCR_FALLBACK} chars={len(ocr_text)}")
        return PageText(page, ocr_text, METHOD_OCR_FALLBACK)
    log(f"[page {page}] method={METHOD_SELECTABLE_FALLBACK} chars={len(selectable)}")
    return PageText(page, selectable, METHOD_SELECTABLE_FALLBACK)


# -----------------------------
# Optional imports
# -----------------------------
def try_import_pdfplumber():
    try:
        import pdfplumber  # type: ignore
        return pdfplumber
    except Exception:
        return None

def try_import_pdf2image():
    try:
        from pdf2image import convert_from_path  # type: ignore
        return convert_from_path
    except Exception:
        return None

def try_import_ocr():
    try:
        from PIL import Image  # type: ignore
        import pytesseract  # type: ignore
        return Image, pytesseract
    except Exception:
        return None, None

def try_import_cv2():
    try:
        import cv2  # type: ignore
        import numpy as np  # type: ignore
        return cv2, np
    except Exception:
        return None, None


# -----------------------------
# OCR
# -----------------------------
def _apply_clahe(cv2: Any, gray: Any, clip: float = 2.0, grid: int = 8) -> Any:
    clahe = cv2.createCLAHE(clipLimit=float(clip), tileGridSize=(int(grid), int(grid)))
    return clahe.apply(gray)

def preprocess_for_ocr(pil_img: Any) -> Any:
    """Grayscale -> CLAHE -> Otsu binarization. Returns the image untouched if OpenCV is missing."""
    cv2, np = try_import_cv2()
    Image, _ = try_import_ocr()
    if cv2 is None or Image is None:
        return pil_img
    arr = np.array(pil_img.convert("RGB"))
    gray = cv2.cvtColor(arr, cv2.COLOR_RGB2GRAY)
    gray = _apply_clahe(cv2, gray)
    _, out = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    return Image.fromarray(out)

def tesseract_text(pil_img: Any, lang: Optional[str] = None) -> str:
    Image, pytesseract = try_import_ocr()
    if Image is None or pytesseract is None:
        raise RuntimeError("OCR deps missing. Install: pip install pillow pytesseract (and system tesseract).")
    cmd = resolve_tesseract_cmd()
    if cmd:
        pytesseract.pytesseract.tesseract_cmd = cmd
    img = preprocess_for_ocr(pil_img)
    return pytesseract.image_to_string(img, lang=resolve_ocr_lang(lang), config=TESSERACT_CONFIG) or ""

class TextDirOcrBridge:
    """Pre-computed OCR: page N is read from <dir>/page_NNN.txt; a missing file means no text."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def path_for(self, page: int) -> Path:
        return self.directory / f"page_{page:03d}.txt"

    def __call__(self, page: int) -> Optional[str]:
        p = self.path_for(page)
        if not p.exists():
            return None
        return p.read_text(encoding="utf-8", errors="replace")

class Base64OcrBridge:
    """OCR for a base64-encoded raster (PNG/JPEG bytes), via Tesseract."""

    def __init__(self, lang: Optional[str] = None):
        self.lang = lang

    def __call__(self, image_b64: str) -> str:
        Image, _ = try_import_ocr()
        if Image is None:
            raise RuntimeError("Pillow not installed (pip install pillow).")
        if "," in image_b64 and image_b64.lstrip().startswith("data:"):
            image_b64 = image_b64.split(",", 1)[1]
        raw = base64.b64decode(image_b64)
        with Image.open(io.BytesIO(raw)) as img:
            img.load()
            return tesseract_text(img, self.lang)

def image_to_base64_png(pil_img: Any) -> str:
    buf = io.BytesIO()
    pil_img.save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


# -----------------------------
# PDF source
# -----------------------------
class PdfSource:
    """pdfplumber for the text layer, pdf2image for single-page renders."""

    def __init__(self, path: Union[str, Path], dpi: Optional[int] = None):
        pdfplumber = try_import_pdfplumber()
        if pdfplumber is None:
            raise RuntimeError("pdfplumber not installed. Install: pip install pdfplumber")
        self.path = Path(path)
        self.dpi = resolve_dpi(dpi)
        self._pdf = pdfplumber.open(str(self.path))

    def __enter__(self) -> "PdfSource":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        self._pdf.close()

    @property
    def page_count(self) -> int:
        return len(self._pdf.pages)

    def page_text(self, page: int) -> str:
        return self._pdf.pages[page - 1].extract_text() or ""

    def render_page(self, page: int) -> Any:
        convert_from_path = try_import_pdf2image()
        if convert_from_path is None:
            raise RuntimeError("pdf2image not installed. Install: pip install pdf2image (and poppler).")
        images = convert_from_path(str(self.path), dpi=self.dpi, first_page=page, last_page=page)
        if not images:
            raise RuntimeError(f"pdf2image returned no image for page {page}")
        return images[0]

def iter_page_texts(
    source: PdfSource,
    ocr_bridge: Optional[OcrBridge] = None,
    use_ocr: bool = True,
    lang: Optional[str] = None,
    log: LogFn = _noop,
    image_bridge: Optional[ImageOcrBridge] = None,
) -> Iterator[PageText]:
    """
    Sequential: each page is fully resolved (render + OCR included) before the next starts.
    Without a page bridge, pages are rendered and handed to image_bridge as base64 PNG
    (Base64OcrBridge, i.e. local Tesseract, when none is given).
    """
    if image_bridge is None:
        image_bridge = Base64OcrBridge(lang)
    for page in range(1, source.page_count + 1):
        render_ocr: Optional[Callable[[], Optional[str]]] = None
        if use_ocr and ocr_bridge is None:
            render_ocr = lambda page=page: image_bridge(image_to_base64_png(source.render_page(page)))  # noqa: E731
        yield select_page_text(
            page,
            lambda page=page: source.page_text(page),
            ocr_bridge=ocr_bridge if use_ocr else None,
            render_ocr=render_ocr,
            log=log,
        )

def collect_page_texts(source: PdfSource, **kwargs: Any) -> List[PageText]:
    return list(iter_page_texts(source, **kwargs))
