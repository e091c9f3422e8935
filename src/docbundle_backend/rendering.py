"""
Per-document page rendering for the composite PDF.

PageRenderer appends the pages for one document to an open PyMuPDF document
and returns a record of what it appended:

- PDFs are copied page by page, in source order
- Raster images get a fixed-size page with a title, a caption and the image
  scaled to fit below them
- Anything else, or a document whose bytes could not be fetched, gets a
  placeholder page describing the document

Rendering never raises to the caller: malformed content turns into an error
placeholder.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import pymupdf
from omegaconf import DictConfig
from PIL import Image, ImageOps

from .errors import FetchError, RenderFailure
from .models import Document, DocumentKind

logger = logging.getLogger(__name__)

BLACK = (0, 0, 0)
GREY = (0.5, 0.5, 0.5)
RED = (0.8, 0.2, 0.2)

# Pillow decoder names for the image subtypes we expect to see
PILLOW_FORMATS = {
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/pjpeg": "JPEG",
    "image/png": "PNG",
    "image/gif": "GIF",
    "image/bmp": "BMP",
    "image/webp": "WEBP",
    "image/tiff": "TIFF",
}


@dataclass(frozen=True)
class PageGeometry:
    width: float = 595
    height: float = 842
    margin: float = 50

    @classmethod
    def from_config(cls, page_config: DictConfig) -> "PageGeometry":
        return cls(
            width=float(page_config.width),
            height=float(page_config.height),
            margin=float(page_config.margin),
        )

    @property
    def image_width_budget(self) -> float:
        return self.width - 2 * self.margin

    @property
    def image_height_budget(self) -> float:
        return self.height - 3 * self.margin


@dataclass(frozen=True)
class CopiedPdfPage:
    document_id: str
    source_index: int


@dataclass(frozen=True)
class EmbeddedImagePage:
    document_id: str
    x: float
    y: float
    scaled_width: float
    scaled_height: float


@dataclass(frozen=True)
class PlaceholderPage:
    document_id: str
    title: str
    detail_lines: Tuple[str, ...]
    is_error: bool


Page = Union[CopiedPdfPage, EmbeddedImagePage, PlaceholderPage]


def decode_image(data: bytes, mime_type: str) -> Image.Image:
    """
    Decode image bytes, trusting the declared subtype first and PNG second.

    Uploads are sometimes labelled with the wrong subtype (a PNG saved as
    ``.jpg``), so a failed decode is retried as PNG before giving up.

    Raises:
        RenderFailure: neither the declared format nor PNG could decode the bytes
    """
    declared = PILLOW_FORMATS.get((mime_type or "").split(";", 1)[0].strip().lower())
    attempts: List[Optional[str]] = [declared]
    if declared != "PNG":
        attempts.append("PNG")

    last_error: Optional[Exception] = None
    for image_format in attempts:
        try:
            image = Image.open(io.BytesIO(data), formats=[image_format] if image_format else None)
            image.load()
            return image
        except Exception as exc:  # noqa: BLE001
            last_error = exc
            logger.debug(f"Image decode as {image_format or 'auto'} failed: {exc}")
    raise RenderFailure(f"Could not decode image ({mime_type}): {last_error}")


def prepare_image(image: Image.Image) -> Tuple[bytes, int, int]:
    """
    Normalize a decoded image for embedding.

    Applies EXIF orientation, flattens transparency onto white and converts to
    RGB or greyscale. JPEG sources stay JPEG; everything else is stored as PNG.

    Returns:
        (encoded bytes, pixel width, pixel height)
    """
    output_format = "JPEG" if image.format == "JPEG" else "PNG"
    image = ImageOps.exif_transpose(image)

    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        flattened = Image.new("RGB", rgba.size, (255, 255, 255))
        flattened.paste(rgba, mask=rgba.getchannel("A"))
        image = flattened
    elif image.mode not in ("RGB", "L"):
        image = image.convert("RGB")

    buffer = io.BytesIO()
    if output_format == "JPEG":
        image.save(buffer, format="JPEG", quality=95)
    else:
        image.save(buffer, format="PNG")
    return buffer.getvalue(), image.width, image.height


def fit_image(geometry: PageGeometry, image_width: int, image_height: int) -> Tuple[float, float, float, float]:
    """
    Scale an image into the page's image area.

    Returns:
        (x, y, scaled_width, scaled_height) with ``y`` measured from the top
        edge; the image is centred horizontally and anchored below the caption.
    """
    scale = min(
        geometry.image_width_budget / image_width,
        geometry.image_height_budget / image_height,
    )
    scaled_width = min(image_width * scale, geometry.image_width_budget)
    scaled_height = min(image_height * scale, geometry.image_height_budget)
    x = (geometry.width - scaled_width) / 2
    y = 2 * geometry.margin
    return x, y, scaled_width, scaled_height


class PageRenderer:
    """Turns one document into pages appended to a composite PDF."""

    def __init__(self, geometry: PageGeometry | None = None) -> None:
        self.geometry = geometry or PageGeometry()

    def render(
        self,
        target: pymupdf.Document,
        document: Document,
        payload: Union[bytes, FetchError],
        position: int,
    ) -> List[Page]:
        """
        Append the pages for ``document`` to ``target``.

        Args:
            target: Composite document being assembled
            document: Descriptor of the document to render
            payload: Fetched bytes, or the FetchError raised while fetching them
            position: 1-based position of the document in the requested order

        Returns:
            One record per page appended, in page order
        """
        title = f"Document {position}: {document.field_name}"

        if isinstance(payload, FetchError):
            logger.warning(f"Document {document.id} unavailable: {payload.message}")
            return [self._draw_placeholder(target, PlaceholderPage(
                document_id=document.id,
                title=title,
                detail_lines=(*self._describe(document), "Document not available for embedding."),
                is_error=True,
            ))]

        page_count_before = target.page_count
        try:
            if document.kind is DocumentKind.PDF:
                return self._copy_pdf(target, document, payload)
            if document.kind is DocumentKind.IMAGE:
                return [self._embed_image(target, document, payload, title)]
            return [self._draw_placeholder(target, PlaceholderPage(
                document_id=document.id,
                title=title,
                detail_lines=(*self._describe(document), "This document has been included as a placeholder."),
                is_error=False,
            ))]
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Error embedding document {document.display_name}: {exc}")
            # Drop anything half-written before the failure
            while target.page_count > page_count_before:
                target.delete_page(-1)
            return [self._draw_placeholder(target, PlaceholderPage(
                document_id=document.id,
                title=title,
                detail_lines=(
                    f"Error embedding document: {document.display_name}",
                    f"Type: {document.mime_type}",
                    "Document could not be embedded due to an error.",
                ),
                is_error=True,
            ))]

    def _describe(self, document: Document) -> Tuple[str, ...]:
        lines = [f"File: {document.original_name}", f"Type: {document.mime_type}"]
        if document.size_mb is not None:
            lines.append(f"Size: {document.size_mb:.2f} MB")
        return tuple(lines)

    def _copy_pdf(self, target: pymupdf.Document, document: Document, data: bytes) -> List[Page]:
        with pymupdf.open(stream=data, filetype="pdf") as source:
            if source.needs_pass:
                raise RenderFailure(f"PDF {document.display_name} is password protected")
            page_count = source.page_count
            if page_count == 0:
                raise RenderFailure(f"PDF {document.display_name} has no pages")
            target.insert_pdf(source)
        return [CopiedPdfPage(document_id=document.id, source_index=index) for index in range(page_count)]

    def _embed_image(self, target: pymupdf.Document, document: Document, data: bytes, title: str) -> EmbeddedImagePage:
        with decode_image(data, document.mime_type) as image:
            image_bytes, image_width, image_height = prepare_image(image)
        x, y, scaled_width, scaled_height = fit_image(self.geometry, image_width, image_height)

        margin = self.geometry.margin
        page = target.new_page(width=self.geometry.width, height=self.geometry.height)
        page.insert_text((margin, margin), title, fontsize=16, color=BLACK)
        page.insert_text((margin, margin + 20), f"File: {document.original_name}", fontsize=12, color=GREY)
        page.insert_image(pymupdf.Rect(x, y, x + scaled_width, y + scaled_height), stream=image_bytes)

        return EmbeddedImagePage(
            document_id=document.id,
            x=x,
            y=y,
            scaled_width=scaled_width,
            scaled_height=scaled_height,
        )

    def _draw_placeholder(self, target: pymupdf.Document, placeholder: PlaceholderPage) -> PlaceholderPage:
        margin = self.geometry.margin
        page = target.new_page(width=self.geometry.width, height=self.geometry.height)
        page.insert_text((margin, 2 * margin), placeholder.title, fontsize=16, color=BLACK)

        *details, note = placeholder.detail_lines
        y = 2 * margin + 30
        for line in details:
            page.insert_text((margin, y), line, fontsize=14, color=BLACK)
            y += 20
        page.insert_text((margin, y + 10), note, fontsize=12, color=RED if placeholder.is_error else GREY)
        return placeholder
