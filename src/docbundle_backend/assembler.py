"""
Composite PDF assembly: cover page, document pages in order, footer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Union

import pymupdf
from omegaconf import DictConfig

from .errors import FetchError, SerializationFailure, ValidationError
from .models import Document
from .rendering import BLACK, GREY, Page, PageRenderer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoverPage:
    title: str
    customer_name: str
    customer_email: str
    date: str


@dataclass(frozen=True)
class Branding:
    cover_title: str = "Visa Assessment Documents"
    generator_signature: str = "Generated by Wise Steps Consultant"

    @classmethod
    def from_config(cls, branding_config: DictConfig) -> "Branding":
        return cls(
            cover_title=str(branding_config.cover_title),
            generator_signature=str(branding_config.generator_signature),
        )


@dataclass
class CompositeOutput:
    """
    The assembled composite.

    Attributes:
        cover: Page 0
        pages: Pages after the cover, in document order
        pdf_bytes: Serialized PDF
        generated_at: Timestamp written into the footer
        footer_page_index: Index of the page carrying the footer, if any
    """

    cover: CoverPage
    pages: List[Page] = field(default_factory=list)
    pdf_bytes: bytes = b""
    generated_at: Optional[datetime] = None
    footer_page_index: Optional[int] = None

    @property
    def page_count(self) -> int:
        return 1 + len(self.pages)


class CompositeAssembler:
    def __init__(self, renderer: PageRenderer | None = None, branding: Branding | None = None) -> None:
        self.renderer = renderer or PageRenderer()
        self.branding = branding or Branding()

    def assemble(
        self,
        documents: Sequence[Document],
        payloads: Sequence[Union[bytes, FetchError]],
        customer_name: str,
        customer_email: str,
        now: Optional[datetime] = None,
    ) -> CompositeOutput:
        """
        Build the composite PDF for already-resolved documents.

        Args:
            documents: Documents in the order they should appear
            payloads: Fetched bytes (or FetchError) aligned with ``documents``
            customer_name: Shown on the cover page
            customer_email: Shown on the cover page
            now: Generation time; defaults to the current UTC time

        Raises:
            ValidationError: ``documents`` is empty
            SerializationFailure: the finished PDF could not be written out
        """
        if not documents:
            raise ValidationError("No documents selected")
        if len(documents) != len(payloads):
            raise ValueError("Each document needs exactly one payload")

        now = now or datetime.now(timezone.utc)
        geometry = self.renderer.geometry
        cover = CoverPage(
            title=self.branding.cover_title,
            customer_name=customer_name,
            customer_email=customer_email,
            date=now.strftime("%d/%m/%Y"),
        )
        output = CompositeOutput(cover=cover, generated_at=now)

        composite = pymupdf.open()
        try:
            self._draw_cover(composite, cover)
            for position, (document, payload) in enumerate(zip(documents, payloads), start=1):
                output.pages.extend(self.renderer.render(composite, document, payload, position))

            if composite.page_count > 1:
                self._draw_footer(composite[-1], geometry.margin, now)
                output.footer_page_index = composite.page_count - 1

            try:
                output.pdf_bytes = composite.tobytes(garbage=3, deflate=True)
            except Exception as exc:  # noqa: BLE001
                raise SerializationFailure(f"Failed to serialize merged PDF: {exc}") from exc
        finally:
            composite.close()

        logger.info(f"Assembled composite with {output.page_count} pages from {len(documents)} documents")
        return output

    def _draw_cover(self, composite: pymupdf.Document, cover: CoverPage) -> None:
        geometry = self.renderer.geometry
        margin = geometry.margin
        page = composite.new_page(width=geometry.width, height=geometry.height)
        page.insert_text((margin, 100), cover.title, fontsize=24, color=BLACK)
        page.insert_text((margin, 150), f"Customer: {cover.customer_name}", fontsize=14, color=BLACK)
        page.insert_text((margin, 170), f"Email: {cover.customer_email}", fontsize=14, color=BLACK)
        page.insert_text((margin, 190), f"Date: {cover.date}", fontsize=14, color=BLACK)

    def _draw_footer(self, page: pymupdf.Page, margin: float, now: datetime) -> None:
        height = page.rect.height
        page.insert_text((margin, height - 50), self.branding.generator_signature, fontsize=10, color=GREY)
        page.insert_text((margin, height - 30), f"Generated on: {now.isoformat()}", fontsize=8, color=GREY)
