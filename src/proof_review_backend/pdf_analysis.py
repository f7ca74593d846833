"""
Cut contour detection for print-ready PDFs.

A cutting device follows a vector path that designers place either on a
dedicated layer (an Optional Content Group) or in a dedicated spot colour
(a Separation colour space), conventionally named "CutContour". This module
finds that marker and measures the path's bounding box in inches so the
review surface can compare it with the size the customer ordered.

Not finding a contour and not being able to read the file are different
outcomes: the first is a normal ``CutContourAnalysis`` with
``has_cut_contour=False``, the second raises ``AnalysisError``.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Sequence, Tuple

import fitz  # PyMuPDF
from omegaconf import DictConfig

from .errors import AnalysisError
from .models import BoundingBox, CutContourAnalysis, Dimensions

logger = logging.getLogger(__name__)

POINTS_PER_INCH = 72.0
DEFAULT_CONTOUR_NAMES = ("cutcontour", "cut contour", "dieline", "thrucut", "kisscut")
DEFAULT_FILENAME_HINTS = ("cutcontour", "cut-contour", "cut_contour", "dieline")

_SEPARATION_PATTERN = re.compile(r"/Separation\s*/([^\s/\[\]<>()]+)")
_DEVICEN_PATTERN = re.compile(r"/DeviceN\s*\[([^\]]*)\]")
_NAME_PATTERN = re.compile(r"/([^\s/\[\]<>()]+)")
_REFERENCE_PATTERN = re.compile(r"(\d+)\s+0\s+R")
_NAME_ESCAPE_PATTERN = re.compile(r"#([0-9A-Fa-f]{2})")

Rect = Tuple[float, float, float, float]


def _normalize_name(name: str) -> str:
    return re.sub(r"[\s_\-]+", "", name).lower()


def _decode_pdf_name(name: str) -> str:
    return _NAME_ESCAPE_PATTERN.sub(lambda match: chr(int(match.group(1), 16)), name)


def separation_names(colorspace_source: str) -> List[str]:
    """
    Extract spot colour (colourant) names from PDF ColorSpace object source.

    Handles Separation arrays and DeviceN colourant lists.

    Example:
        >>> separation_names("<</CS0[/Separation/CutContour/DeviceCMYK 7 0 R]>>")
        ["CutContour"]
    """
    names: List[str] = []
    for match in _SEPARATION_PATTERN.finditer(colorspace_source):
        names.append(_decode_pdf_name(match.group(1)))
    for match in _DEVICEN_PATTERN.finditer(colorspace_source):
        names.extend(_decode_pdf_name(name) for name in _NAME_PATTERN.findall(match.group(1)))
    return [name for name in names if name not in ("None", "All")]


def _union(rects: Iterable[Rect]) -> Optional[Rect]:
    rects = list(rects)
    if not rects:
        return None
    return (
        min(rect[0] for rect in rects),
        min(rect[1] for rect in rects),
        max(rect[2] for rect in rects),
        max(rect[3] for rect in rects),
    )


class PrintFileAnalyzer:
    """Inspects PDF layer and spot colour tables for a cut contour marker."""

    def __init__(
        self,
        contour_names: Sequence[str] = DEFAULT_CONTOUR_NAMES,
        filename_hints: Sequence[str] = DEFAULT_FILENAME_HINTS,
        points_per_inch: float = POINTS_PER_INCH,
    ) -> None:
        self.contour_names = [_normalize_name(name) for name in contour_names]
        self.filename_hints = [hint.lower() for hint in filename_hints]
        self.points_per_inch = points_per_inch

    @classmethod
    def from_config(cls, config: DictConfig) -> "PrintFileAnalyzer":
        analysis = config.analysis
        return cls(
            contour_names=list(analysis.contour_names),
            filename_hints=list(analysis.filename_hints),
            points_per_inch=float(analysis.points_per_inch),
        )

    def is_contour_name(self, name: str) -> bool:
        normalized = _normalize_name(name)
        return any(marker in normalized for marker in self.contour_names)

    def analyze(self, data: bytes, filename: str) -> CutContourAnalysis:
        """
        Analyze a PDF for a cut contour.

        Args:
            data: Raw PDF bytes
            filename: Original filename (reported in errors and used as a weak hint)

        Returns:
            CutContourAnalysis describing layers, spot colours and, when a contour
            was found, its size in inches

        Raises:
            AnalysisError: If the file cannot be parsed as a PDF or has no pages
        """
        try:
            document = fitz.open(stream=data, filetype="pdf")
        except (RuntimeError, ValueError) as exc:
            logger.warning(f"Could not open {filename} for cut contour analysis: {exc}")
            raise AnalysisError(f"Could not read {filename} as a PDF: {exc}", filename=filename, original_error=exc) from exc

        try:
            if document.needs_pass:
                raise AnalysisError(f"{filename} is password protected and cannot be inspected", filename=filename)
            if document.page_count == 0:
                raise AnalysisError(f"{filename} contains no pages", filename=filename)
            return self._analyze_document(document, filename)
        except AnalysisError:
            raise
        except Exception as exc:
            logger.warning(f"Cut contour analysis of {filename} failed: {exc}")
            raise AnalysisError(f"Could not analyze {filename}: {exc}", filename=filename, original_error=exc) from exc
        finally:
            document.close()

    def _analyze_document(self, document: "fitz.Document", filename: str) -> CutContourAnalysis:
        analysis = CutContourAnalysis(filename=filename, page_count=document.page_count)
        analysis.details.append(f"PDF loaded with {document.page_count} page(s)")

        page = document[0]
        page_rect = page.rect
        analysis.details.append(
            f"Page size: {page_rect.width:.2f} x {page_rect.height:.2f} points "
            f"({page_rect.width / self.points_per_inch:.2f} x {page_rect.height / self.points_per_inch:.2f} inches)"
        )

        analysis.layers_found = self._find_layers(document)
        if analysis.layers_found:
            analysis.details.append(f"Layers: {', '.join(analysis.layers_found)}")
        else:
            analysis.details.append("No optional content groups (layers) found")

        analysis.spot_colors_found = self._find_spot_colors(document)
        if analysis.spot_colors_found:
            analysis.details.append(f"Spot colors: {', '.join(analysis.spot_colors_found)}")

        contour_layers = [name for name in analysis.layers_found if self.is_contour_name(name)]
        contour_colors = [name for name in analysis.spot_colors_found if self.is_contour_name(name)]

        if contour_layers or contour_colors:
            analysis.has_cut_contour = True
            analysis.detected_by = "layer" if contour_layers else "spot_color"
            rect = self._contour_rect(page, contour_layers)
            if rect is None:
                analysis.details.append("No vector paths found for the contour; using the page box")
                rect = (page_rect.x0, page_rect.y0, page_rect.x1, page_rect.y1)
            self._set_dimensions(analysis, rect)
        elif any(hint in filename.lower() for hint in self.filename_hints):
            analysis.has_cut_contour = True
            analysis.detected_by = "filename"
            analysis.details.append("Filename suggests cut contour content; dimensions taken from the page box")
            self._set_dimensions(analysis, (page_rect.x0, page_rect.y0, page_rect.x1, page_rect.y1))

        if not analysis.has_cut_contour:
            analysis.issues.append("No CutContour layer or spot color detected.")
            analysis.issues.append('Put cut lines on a layer named "CutContour" or use a spot color named "CutContour".')
            if not analysis.layers_found and not analysis.spot_colors_found:
                analysis.issues.append("No layers or spot colors detected. Consider saving with layers preserved.")
        else:
            logger.info(f"Cut contour detected in {filename} via {analysis.detected_by}: {analysis.dimensions_inches}")

        return analysis

    def _find_layers(self, document: "fitz.Document") -> List[str]:
        ocgs = document.get_ocgs() or {}
        return [info.get("name", "") for _, info in sorted(ocgs.items()) if info.get("name")]

    def _find_spot_colors(self, document: "fitz.Document") -> List[str]:
        found: List[str] = []
        for page in document:
            source = self._colorspace_source(document, page.xref)
            for name in separation_names(source):
                if name not in found:
                    found.append(name)
        return found

    def _colorspace_source(self, document: "fitz.Document", page_xref: int) -> str:
        kind, value = document.xref_get_key(page_xref, "Resources/ColorSpace")
        if kind == "null":
            return ""
        if kind == "xref":
            value = document.xref_object(int(value.split()[0]), compressed=True)
        # Colour spaces are often indirect objects of their own
        resolved = [value]
        for reference in _REFERENCE_PATTERN.findall(value):
            xref = int(reference)
            if 0 < xref < document.xref_length():
                resolved.append(document.xref_object(xref, compressed=True))
        return " ".join(resolved)

    def _contour_rect(self, page: "fitz.Page", contour_layers: List[str]) -> Optional[Rect]:
        drawings = page.get_drawings()
        layer_set = set(contour_layers)

        def as_tuple(drawing) -> Rect:
            rect = drawing["rect"]
            return (rect.x0, rect.y0, rect.x1, rect.y1)

        on_layer = [as_tuple(d) for d in drawings if layer_set and d.get("layer") in layer_set]
        if on_layer:
            return _union(on_layer)
        # untagged paths: fall back to stroke-only paths, which is how cut lines are drawn
        strokes = [as_tuple(d) for d in drawings if d.get("type") == "s"]
        return _union(strokes)

    def _set_dimensions(self, analysis: CutContourAnalysis, rect: Rect) -> None:
        x0, y0, x1, y1 = rect
        width_points = x1 - x0
        height_points = y1 - y0
        analysis.bounding_box = BoundingBox(x=x0, y=y0, width=width_points, height=height_points)
        analysis.dimensions_inches = Dimensions(
            width=round(width_points / self.points_per_inch, 2),
            height=round(height_points / self.points_per_inch, 2),
        )
        analysis.details.append(
            f"Cut contour: {width_points:.2f} x {height_points:.2f} points = "
            f"{analysis.dimensions_inches.width} x {analysis.dimensions_inches.height} inches"
        )
