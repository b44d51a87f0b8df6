"""PDF to page-image conversion."""

from __future__ import annotations

from pathlib import Path

import fitz  # PyMuPDF

DEFAULT_ZOOM = 1.5
DEFAULT_JPEG_QUALITY = 80


def render_pdf_pages(
    pdf_path: Path,
    *,
    zoom: float = DEFAULT_ZOOM,
    jpeg_quality: int = DEFAULT_JPEG_QUALITY,
) -> list[bytes]:
    """Render every page of a PDF to JPEG bytes.

    A 1.5 zoom keeps handwriting legible without blowing up request size.
    """

    doc = fitz.open(pdf_path)
    matrix = fitz.Matrix(zoom, zoom)
    pages: list[bytes] = []
    try:
        for i in range(doc.page_count):
            page = doc.load_page(i)
            pixmap = page.get_pixmap(matrix=matrix)
            pages.append(pixmap.tobytes("jpeg", jpg_quality=jpeg_quality))
    finally:
        doc.close()
    return pages
