"""
Text extraction from uploaded course material.
"""
import io
import logging
import os

from pptx import Presentation
from pypdf import PdfReader

logger = logging.getLogger(__name__)


class ExtractionError(ValueError):
    pass


def extract_text_from_pdf(data: bytes) -> str:
    reader = PdfReader(io.BytesIO(data))
    text = ""
    for page in reader.pages:
        text += (page.extract_text() or "") + "\n"
    return text.strip()


def extract_text_from_pptx(data: bytes) -> str:
    prs = Presentation(io.BytesIO(data))
    text = ""
    for slide_num, slide in enumerate(prs.slides, 1):
        text += f"\n=== Slide {slide_num} ===\n"
        for shape in slide.shapes:
            if shape.has_text_frame:
                text += shape.text_frame.text + "\n"
    return text.strip()


def extract_text_from_plain(data: bytes) -> str:
    return data.decode("utf-8").strip()


_EXTRACTORS = {
    ".pdf": extract_text_from_pdf,
    ".pptx": extract_text_from_pptx,
    ".txt": extract_text_from_plain,
    ".md": extract_text_from_plain,
}


def extract_text(filename: str, data: bytes) -> str:
    """Dispatch on file extension. Raises ExtractionError on any parse failure."""
    ext = os.path.splitext(filename)[1].lower()
    extractor = _EXTRACTORS.get(ext)
    if extractor is None:
        raise ExtractionError(f"Unsupported file type: {ext or filename}")
    try:
        return extractor(data)
    except Exception as e:
        logger.error(f"Text extraction failed for {filename}: {e}")
        raise ExtractionError(f"Could not read {ext} file: {e}") from e
