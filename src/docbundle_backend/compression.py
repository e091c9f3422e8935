"""
Iterative PDF size reduction.

One compression pass re-encodes the raster images of a PDF as JPEG at a given
quality (downscaling them by the same factor) and rewrites the file with
garbage collection and stream deflation.

CompressionEngine drives passes per document:

- files above the large-file threshold go through a bounded loop that lowers
  the quality toward the target size
- smaller files get one pass at the quality of the requested level

The engine never returns bytes larger than the original.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

import pymupdf
from omegaconf import DictConfig, OmegaConf
from PIL import Image

from .errors import CompressionFailure
from .models import CompressionLevel, CompressionResult, CompressionState

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True)
class CompressionPolicy:
    """
    Business constants for compression.

    Attributes:
        target_size_bytes: Size the large-file loop aims for (4.90 MB)
        large_file_threshold_bytes: Above this size the iterative loop is used (10 MB)
        max_attempts: Upper bound on passes in the large-file loop
        initial_quality: Quality the large-file loop starts from
        min_quality: Floor for the quality in the large-file loop
        max_ratio: Cap on the per-attempt quality multiplier
        tolerance: The loop stops once size <= target * tolerance
        min_image_edge: Images whose shorter edge is at or below this are not downscaled
        levels: Quality per requested level on the small-file path
        default_level: Level used when the request names none
    """

    target_size_bytes: int = int(4.90 * MB)
    large_file_threshold_bytes: int = 10 * MB
    max_attempts: int = 5
    initial_quality: float = 1.0
    min_quality: float = 0.3
    max_ratio: float = 0.9
    tolerance: float = 1.1
    min_image_edge: int = 64
    levels: Dict[str, float] = field(default_factory=lambda: {"low": 0.8, "medium": 0.6, "high": 0.4})
    default_level: CompressionLevel = CompressionLevel.MEDIUM

    @classmethod
    def from_config(cls, compression_config: DictConfig) -> "CompressionPolicy":
        return cls(
            target_size_bytes=int(compression_config.target_size_bytes),
            large_file_threshold_bytes=int(compression_config.large_file_threshold_bytes),
            max_attempts=int(compression_config.max_attempts),
            initial_quality=float(compression_config.initial_quality),
            min_quality=float(compression_config.min_quality),
            max_ratio=float(compression_config.max_ratio),
            tolerance=float(compression_config.tolerance),
            min_image_edge=int(compression_config.min_image_edge),
            levels={str(k): float(v) for k, v in OmegaConf.to_container(compression_config.levels).items()},
            default_level=CompressionLevel(str(compression_config.default_level)),
        )

    def quality_for(self, level: Optional[CompressionLevel]) -> float:
        return self.levels[(level or self.default_level).value]


@dataclass
class CompressionOutcome:
    """A CompressionResult plus the bytes it describes and, once written, their path."""

    result: CompressionResult
    data: bytes
    path: Optional[Path] = None


def _jpeg_quality(quality: float) -> int:
    return int(max(10, min(95, round(quality * 100))))


def _reencode_image(doc: pymupdf.Document, xref: int, quality: float, min_image_edge: int) -> Optional[bytes]:
    extracted = doc.extract_image(xref)
    if not extracted or not extracted.get("image"):
        return None
    original = extracted["image"]

    try:
        with Image.open(io.BytesIO(original)) as source:
            source.load()
            image = source if source.mode in ("RGB", "L") else source.convert("RGB")
            if quality < 1.0 and min(image.size) > min_image_edge:
                resized = (max(1, int(image.width * quality)), max(1, int(image.height * quality)))
                image = image.resize(resized, Image.Resampling.LANCZOS)
            buffer = io.BytesIO()
            image.save(buffer, format="JPEG", quality=_jpeg_quality(quality), optimize=True)
    except Exception as exc:  # noqa: BLE001
        # Formats Pillow cannot decode (JBIG2, some JPX) are left untouched
        logger.debug(f"Skipping image xref {xref}: {exc}")
        return None

    encoded = buffer.getvalue()
    return encoded if len(encoded) < len(original) else None


def compress_pass(data: bytes, quality: float, min_image_edge: int = 64) -> bytes:
    """
    Run one compression pass over a PDF.

    Args:
        data: PDF bytes
        quality: Scalar in (0, 1]; JPEG quality is ``quality * 100`` and images
            are downscaled by ``quality``
        min_image_edge: Images with a shorter edge at or below this keep their size

    Raises:
        CompressionFailure: the PDF cannot be opened, is encrypted, or cannot be rewritten
    """
    try:
        doc = pymupdf.open(stream=data, filetype="pdf")
    except Exception as exc:  # noqa: BLE001
        raise CompressionFailure(f"Could not open PDF: {exc}") from exc

    try:
        if doc.needs_pass:
            raise CompressionFailure("PDF is password protected")

        replaced = 0
        seen: set[int] = set()
        for page in doc:
            for info in page.get_images(full=True):
                xref, smask, bits_per_component = info[0], info[1], info[4]
                # Soft-masked images and 1-bit stencils would lose transparency as JPEG
                if xref in seen or smask or bits_per_component == 1:
                    continue
                seen.add(xref)
                replacement = _reencode_image(doc, xref, quality, min_image_edge)
                if replacement is not None:
                    page.replace_image(xref, stream=replacement)
                    replaced += 1

        logger.debug(f"Compression pass at quality {quality:.2f} replaced {replaced} images")
        return doc.tobytes(garbage=4, deflate=True, deflate_images=True, deflate_fonts=True, clean=True)
    except CompressionFailure:
        raise
    except Exception as exc:  # noqa: BLE001
        raise CompressionFailure(f"Compression pass failed: {exc}") from exc
    finally:
        doc.close()


class CompressionEngine:
    """
    Per-document compression state machine.

    ``NOT_STARTED -> COMPRESSING -> {CONVERGED, EXHAUSTED, FAILED}``
    """

    def __init__(
        self,
        policy: CompressionPolicy | None = None,
        compress_fn: Callable[[bytes, float], bytes] | None = None,
    ) -> None:
        self.policy = policy or CompressionPolicy()
        self._compress_fn = compress_fn or (
            lambda data, quality: compress_pass(data, quality, self.policy.min_image_edge)
        )

    def compress(
        self,
        document_id: str,
        original_name: str,
        data: bytes,
        level: Optional[CompressionLevel] = None,
    ) -> CompressionOutcome:
        """Compress one PDF; failures are reported in the result, never raised."""
        if len(data) > self.policy.large_file_threshold_bytes:
            outcome = self._compress_large(document_id, original_name, data)
        else:
            outcome = self._compress_small(document_id, original_name, data, level)

        result = outcome.result
        logger.info(
            f"Compressed {original_name}: {result.original_size} -> {result.compressed_size} bytes "
            f"({result.ratio_percent}%), state={result.state.value}, attempts={result.attempts}"
        )
        return outcome

    def _run_pass(self, data: bytes, quality: float) -> bytes:
        candidate = self._compress_fn(data, quality)
        if not candidate:
            raise CompressionFailure("Compression pass produced no output")
        return candidate

    def _compress_small(
        self,
        document_id: str,
        original_name: str,
        data: bytes,
        level: Optional[CompressionLevel],
    ) -> CompressionOutcome:
        quality = self.policy.quality_for(level)
        try:
            candidate = self._run_pass(data, quality)
        except CompressionFailure as exc:
            logger.warning(f"Compression of {original_name} failed: {exc.message}")
            return self._outcome(document_id, original_name, data, data, quality, 1, CompressionState.FAILED, exc.message)
        best = candidate if len(candidate) < len(data) else data
        return self._outcome(document_id, original_name, data, best, quality, 1, CompressionState.CONVERGED)

    def _compress_large(self, document_id: str, original_name: str, data: bytes) -> CompressionOutcome:
        policy = self.policy
        target = policy.target_size_bytes
        quality = policy.initial_quality
        current_size = len(data)
        best = data
        attempts = 0
        quality_used = quality
        state = CompressionState.COMPRESSING

        # Each pass runs on the original bytes
        for _ in range(policy.max_attempts):
            ratio = min(policy.max_ratio, target / current_size)
            quality = max(policy.min_quality, quality * ratio)
            attempts += 1
            try:
                candidate = self._run_pass(data, quality)
            except CompressionFailure as exc:
                if attempts == 1:
                    logger.warning(f"Compression of {original_name} failed on the first pass: {exc.message}")
                    return self._outcome(
                        document_id, original_name, data, data, quality, attempts, CompressionState.FAILED, exc.message
                    )
                # Keep what earlier passes produced
                logger.warning(f"Compression pass {attempts} for {original_name} failed, keeping previous result: {exc.message}")
                state = CompressionState.EXHAUSTED
                break

            current_size = len(candidate)
            if current_size < len(best):
                best = candidate
                quality_used = quality
            logger.debug(f"{original_name}: attempt {attempts} at quality {quality:.3f} -> {current_size} bytes")
            if current_size <= target * policy.tolerance:
                state = CompressionState.CONVERGED
                break
        else:
            state = CompressionState.EXHAUSTED

        return self._outcome(document_id, original_name, data, best, quality_used, attempts, state)

    def _outcome(
        self,
        document_id: str,
        original_name: str,
        original: bytes,
        compressed: bytes,
        quality: float,
        attempts: int,
        state: CompressionState,
        message: Optional[str] = None,
    ) -> CompressionOutcome:
        original_size = len(original)
        compressed_size = len(compressed)
        ratio = round((1 - compressed_size / original_size) * 100, 2) if original_size else 0.0
        result = CompressionResult(
            document_id=document_id,
            original_name=original_name,
            original_size=original_size,
            compressed_size=compressed_size,
            ratio_percent=ratio,
            quality_used=round(quality, 4),
            attempts=attempts,
            state=state,
            succeeded=state is not CompressionState.FAILED,
            message=message,
        )
        return CompressionOutcome(result=result, data=compressed)
