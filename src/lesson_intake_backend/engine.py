"""
Recognition engine capability.

The pool only needs three operations from an engine backend: create a
handle, recognize one image with it, and destroy it. ``TesseractBackend``
is the production backend; tests plug in their own.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import pytesseract
from PIL import Image, UnidentifiedImageError

from .errors import EngineInitFailure, RecognitionFailure
from .models import RecognitionResult

logger = logging.getLogger(__name__)


class RecognitionBackend(Protocol):
    async def create(self, language: str) -> Any:
        """Create an engine handle. Slow and fallible."""

    async def recognize(self, handle: Any, image: bytes) -> RecognitionResult:
        """Recognize text in one encoded image."""

    async def destroy(self, handle: Any) -> None:
        """Release everything the handle holds."""


@dataclass
class TesseractHandle:
    language: str
    version: str


class TesseractBackend:
    """Backend driving the tesseract binary through pytesseract."""

    def __init__(self, tesseract_cmd: str | None = None) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    async def create(self, language: str) -> TesseractHandle:
        return await asyncio.to_thread(self._create_sync, language)

    def _create_sync(self, language: str) -> TesseractHandle:
        try:
            version = str(pytesseract.get_tesseract_version())
            available = set(pytesseract.get_languages(config=""))
        except (pytesseract.TesseractNotFoundError, OSError) as exc:
            raise EngineInitFailure(f"Tesseract is not available: {exc}") from exc

        missing = [lang for lang in language.split("+") if lang not in available]
        if missing:
            raise EngineInitFailure(f"Tesseract language data missing: {', '.join(missing)}")

        logger.info(f"Tesseract {version} ready for language '{language}'")
        return TesseractHandle(language=language, version=version)

    async def recognize(self, handle: TesseractHandle, image: bytes) -> RecognitionResult:
        return await asyncio.to_thread(self._recognize_sync, handle, image)

    def _recognize_sync(self, handle: TesseractHandle, image: bytes) -> RecognitionResult:
        try:
            with Image.open(io.BytesIO(image)) as img:
                data = pytesseract.image_to_data(img, lang=handle.language, output_type=pytesseract.Output.DICT)
                text = pytesseract.image_to_string(img, lang=handle.language)
        except UnidentifiedImageError as exc:
            raise RecognitionFailure(f"Unreadable image: {exc}") from exc
        except pytesseract.TesseractError as exc:
            raise RecognitionFailure(f"Tesseract failed: {exc}") from exc

        # -1 marks layout rows without text
        confidences = [float(conf) for conf in data["conf"] if float(conf) >= 0]
        confidence = sum(confidences) / len(confidences) if confidences else 0.0
        return RecognitionResult(text=text.strip(), confidence=round(confidence, 2))

    async def destroy(self, handle: TesseractHandle) -> None:
        # The binary is spawned per call, nothing stays resident.
        logger.debug(f"Released tesseract handle for '{handle.language}'")
