"""
Tests for composite assembly.
"""

from datetime import datetime, timezone

import pymupdf
import pytest

from docbundle_backend.assembler import Branding, CompositeAssembler
from docbundle_backend.errors import FetchError, ValidationError
from docbundle_backend.models import Document
from docbundle_backend.rendering import CopiedPdfPage, EmbeddedImagePage, PlaceholderPage

NOW = datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc)


def _document(doc_id, mime_type, name, field_name="passports"):
    return Document(
        id=doc_id,
        field_name=field_name,
        original_name=name,
        mime_type=mime_type,
        size_bytes=2048,
        content_reference=name,
    )


class TestCompositeAssembler:
    def test_cover_documents_and_footer(self, two_page_pdf, jpeg_bytes):
        documents = [
            _document("a", "application/pdf", "passport.pdf"),
            _document("b", "image/jpeg", "photo.jpg", field_name="photo"),
        ]
        output = CompositeAssembler().assemble(
            documents, [two_page_pdf, jpeg_bytes], "Jane Doe", "jane@example.com", now=NOW
        )

        assert output.page_count == 4
        assert output.cover.date == "05/03/2024"
        assert [type(page) for page in output.pages] == [CopiedPdfPage, CopiedPdfPage, EmbeddedImagePage]
        assert output.footer_page_index == 3

        with pymupdf.open(stream=output.pdf_bytes, filetype="pdf") as merged:
            assert merged.page_count == 4
            cover = merged[0].get_text()
            assert "Visa Assessment Documents" in cover
            assert "Customer: Jane Doe" in cover
            assert "Email: jane@example.com" in cover
            assert "Date: 05/03/2024" in cover

            last = merged[3].get_text()
            assert "Generated by Wise Steps Consultant" in last
            assert "Generated on: 2024-03-05T10:00:00+00:00" in last
            for index in range(3):
                assert "Generated on:" not in merged[index].get_text()

    def test_unavailable_documents_do_not_shift_order(self, single_page_pdf):
        documents = [
            _document("a", "application/pdf", "first.pdf"),
            _document("b", "application/pdf", "missing.pdf"),
            _document("c", "application/pdf", "third.pdf"),
        ]
        output = CompositeAssembler().assemble(
            documents,
            [single_page_pdf, FetchError("File not found"), single_page_pdf],
            "Jane Doe",
            "jane@example.com",
            now=NOW,
        )

        assert [page.document_id for page in output.pages] == ["a", "b", "c"]
        assert isinstance(output.pages[1], PlaceholderPage)
        assert output.pages[1].title == "Document 2: passports"

    def test_custom_branding(self, single_page_pdf):
        assembler = CompositeAssembler(branding=Branding(cover_title="Bundle", generator_signature="Made by us"))
        output = assembler.assemble(
            [_document("a", "application/pdf", "a.pdf")], [single_page_pdf], "X", "x@example.com", now=NOW
        )
        with pymupdf.open(stream=output.pdf_bytes, filetype="pdf") as merged:
            assert "Bundle" in merged[0].get_text()
            assert "Made by us" in merged[-1].get_text()

    def test_empty_documents_rejected(self):
        with pytest.raises(ValidationError):
            CompositeAssembler().assemble([], [], "Jane", "jane@example.com")

    def test_payload_count_must_match(self, single_page_pdf):
        with pytest.raises(ValueError):
            CompositeAssembler().assemble(
                [_document("a", "application/pdf", "a.pdf")], [], "Jane", "jane@example.com"
            )
