"""OCR provider: text + confidence for an uploaded document.

PDF pages with a text layer are read with PyMuPDF (confidence 1.0); image-only
pages and image uploads are rasterised and run through Tesseract, whose
per-word confidences (0-100) are averaged into [0, 1].
"""
from __future__ import annotations

import asyncio
import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import fitz  # PyMuPDF
import pytesseract
from PIL import Image

logger = logging.getLogger(__name__)

# Pages whose text layer is shorter than this are treated as scanned images
MIN_TEXT_LAYER_CHARS = 20


class OCRError(Exception):
    """Document bytes could not be read."""


@dataclass(frozen=True)
class OCRResult:
    text: str
    confidence: float
    page_count: int = 1


class OCRProvider(ABC):
    @abstractmethod
    async def analyze(self, data: bytes, mime_type: str | None = None) -> OCRResult:
        """Extract text and a [0, 1] confidence from document bytes."""


def _tesseract_page(image: Image.Image) -> tuple[str, float]:
    """OCR one image; returns (text, mean word confidence in [0, 1])."""
    data = pytesseract.image_to_data(image, output_type=pytesseract.Output.DICT)
    confs = []
    for word, conf in zip(data.get("text", []), data.get("conf", [])):
        try:
            value = float(conf)
        except (TypeError, ValueError):
            continue
        if word and word.strip() and value >= 0:
            confs.append(value)
    text = pytesseract.image_to_string(image)
    confidence = (sum(confs) / len(confs) / 100.0) if confs else 0.0
    return text, max(0.0, min(1.0, confidence))


def _combine(pages: list[tuple[str, float]]) -> OCRResult:
    """Join page texts; confidence is the text-length weighted mean."""
    total_chars = sum(len(t.strip()) for t, _ in pages)
    if total_chars == 0:
        return OCRResult(text="", confidence=0.0, page_count=len(pages))
    confidence = sum(len(t.strip()) * c for t, c in pages) / total_chars
    text = "\n\n".join(t.strip() for t, _ in pages if t.strip())
    return OCRResult(text=text, confidence=round(confidence, 4), page_count=len(pages))


class TesseractOCRProvider(OCRProvider):
    def __init__(self, render_dpi: int = 200, tesseract_cmd: str | None = None):
        self.render_dpi = render_dpi
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def _analyze_pdf(self, data: bytes) -> OCRResult:
        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as e:
            raise OCRError(f"Failed to open PDF: {e}") from e
        pages: list[tuple[str, float]] = []
        try:
            for page in doc:
                text = page.get_text()
                if len(text.strip()) >= MIN_TEXT_LAYER_CHARS:
                    pages.append((text, 1.0))
                    continue
                pix = page.get_pixmap(dpi=self.render_dpi)
                image = Image.open(io.BytesIO(pix.tobytes("png")))
                pages.append(_tesseract_page(image))
        finally:
            doc.close()
        return _combine(pages)

    def _analyze_image(self, data: bytes) -> OCRResult:
        try:
            image = Image.open(io.BytesIO(data))
        except Exception as e:
            raise OCRError(f"Unsupported image: {e}") from e
        return _combine([_tesseract_page(image)])

    def _analyze_sync(self, data: bytes, mime_type: str | None) -> OCRResult:
        if not data:
            raise OCRError("Empty document")
        is_pdf = (mime_type or "").lower() == "application/pdf" or data[:5] == b"%PDF-"
        result = self._analyze_pdf(data) if is_pdf else self._analyze_image(data)
        logger.info(
            "[ocr] %s: %d pages, %d chars, confidence %.2f",
            "pdf" if is_pdf else "image", result.page_count, len(result.text), result.confidence,
        )
        return result

    async def analyze(self, data: bytes, mime_type: str | None = None) -> OCRResult:
        return await asyncio.to_thread(self._analyze_sync, data, mime_type)
