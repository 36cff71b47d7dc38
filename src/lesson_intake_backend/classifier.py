"""
File-type routing for uploaded lesson materials.

Decides which extraction job, if any, an uploaded file requires, from the
file extension and the declared MIME type. PDFs are always routed to
the OCR-capable path; whether a page actually needs recognition is decided
by the extraction step.
"""

from __future__ import annotations

from typing import Optional

from .models import JobType, UploadPreflight
from .utils import split_extension

IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "bmp", "tiff", "webp"})
PDF_EXTENSIONS = frozenset({"pdf"})
PPTX_EXTENSIONS = frozenset({"pptx"})
TEXT_EXTENSIONS = frozenset({"doc", "docx", "txt", "md"})

KNOWN_EXTENSIONS = IMAGE_EXTENSIONS | PDF_EXTENSIONS | PPTX_EXTENSIONS | TEXT_EXTENSIONS

_DESCRIPTIONS = {
    JobType.OCR_IMAGE: "Extracting text from image",
    JobType.OCR_PDF: "Extracting text from PDF",
    JobType.EXTRACT_PDF: "Extracting text from PDF document",
    JobType.EXTRACT_PPTX: "Extracting content from slides",
}


def classify(file_name: str, declared_mime_type: Optional[str] = None) -> Optional[JobType]:
    """
    Map a filename and declared MIME type to the extraction job it requires.

    Rules are checked in order: image, PDF, presentation. A PDF or
    presentation MIME type matches regardless of extension; an image MIME
    type only counts when the extension is missing or unrecognized.

    Args:
        file_name: Original name of the uploaded file
        declared_mime_type: MIME type reported by the client, may be empty

    Returns:
        The JobType to create, or None when the file needs no extraction.
        None means "not handled here", never an error.

    Example:
        >>> classify("Worksheet.PNG", "")
        JobType.OCR_IMAGE
        >>> classify("notes.docx", "application/pdf")
        JobType.OCR_PDF
        >>> classify("notes.docx", "")
        None
    """
    _, ext = split_extension(file_name)
    mime = (declared_mime_type or "").lower()

    if ext in IMAGE_EXTENSIONS or (ext not in KNOWN_EXTENSIONS and "image/" in mime):
        return JobType.OCR_IMAGE
    if ext in PDF_EXTENSIONS or "pdf" in mime:
        return JobType.OCR_PDF
    if ext in PPTX_EXTENSIONS or "presentation" in mime:
        return JobType.EXTRACT_PPTX
    return None


def needs_extraction(file_name: str, declared_mime_type: Optional[str] = None) -> bool:
    return classify(file_name, declared_mime_type) is not None


def describe_job_type(job_type: Optional[JobType]) -> str:
    """Human-readable label shown while a job of this type runs."""
    if job_type is None:
        return "Processing file"
    return _DESCRIPTIONS[job_type]


def is_image_file(file_name: str) -> bool:
    return split_extension(file_name)[1] in IMAGE_EXTENSIONS


def is_pdf_file(file_name: str, declared_mime_type: str = "") -> bool:
    return split_extension(file_name)[1] in PDF_EXTENSIONS or "pdf" in declared_mime_type.lower()


def is_pptx_file(file_name: str, declared_mime_type: str = "") -> bool:
    return split_extension(file_name)[1] in PPTX_EXTENSIONS or "presentation" in declared_mime_type.lower()


def upload_kind(file_name: str, declared_mime_type: str = "") -> str:
    ext = split_extension(file_name)[1]
    if ext in ("pptx", "pdf", "zip"):
        return ext
    if declared_mime_type.lower().startswith("image/") or ext in IMAGE_EXTENSIONS:
        return "image"
    return "other"


def preflight(file_name: str, declared_mime_type: str, size_bytes: int, large_file_mb: float = 20.0) -> UploadPreflight:
    """
    Advisory checks run before an upload is queued.

    Warnings never block the upload; they are surfaced to the user so large
    decks can be compressed before they tie up the single upload slot.
    """
    size_mb = size_bytes / (1024 * 1024)
    kind = upload_kind(file_name, declared_mime_type)

    warnings: list[str] = []
    if size_mb > large_file_mb:
        warnings.append(f"Large file ({size_mb:.1f} MB). Upload will be slower on typical home upload speeds.")
    if kind == "pptx" and size_mb > 25:
        warnings.append("Tip: PowerPoint > File > Compress Pictures (Web/150 ppi) can shrink this a lot.")
    if kind in ("pptx", "pdf", "zip") and size_mb > 60:
        warnings.append("Very large file. Upload one file at a time for best speed.")
    if kind == "zip":
        warnings.append("ZIP isn't faster unless it contains many small assets.")
    return UploadPreflight(kind=kind, size_mb=round(size_mb, 2), warnings=warnings)
