"""
Pytest configuration and fixtures for Docbundle Backend tests.
"""

import io
import os
import random
import shutil
import tempfile
from pathlib import Path

import pymupdf
import pytest
from fastapi.testclient import TestClient
from PIL import Image
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

# Set test environment variables before importing the app
os.environ["WORKSPACE_ROOT"] = tempfile.mkdtemp(prefix="docbundle_test_workspaces_")
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="docbundle_test_uploads_")
os.environ["DATABASE_PATH"] = str(Path(tempfile.mkdtemp(prefix="docbundle_test_db_")) / "submissions.db")

from docbundle_backend.main import app, pipeline, submission_db  # noqa: E402
from docbundle_backend.models import Document, Submission  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Expose and clean up the test directories."""
    dirs = {
        "workspaces": Path(os.environ["WORKSPACE_ROOT"]),
        "uploads": Path(os.environ["UPLOAD_DIR"]),
        "database": Path(os.environ["DATABASE_PATH"]).parent,
    }

    yield dirs

    pipeline.shutdown()
    for path in dirs.values():
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


def make_pdf(page_texts):
    """Build a PDF with one page per text, using reportlab."""
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    for text in page_texts:
        c.drawString(72, 720, text)
        c.showPage()
    c.save()
    return buf.getvalue()


def make_image(image_format="JPEG", size=(400, 300), color=(200, 30, 30)):
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=image_format)
    return buf.getvalue()


def make_noisy_image_pdf(size=(600, 450), seed=7):
    """A one-page PDF carrying a large, hard-to-compress PNG image."""
    rng = random.Random(seed)
    noise = rng.randbytes(size[0] * size[1] * 3)
    image = Image.frombytes("RGB", size, noise)
    png = io.BytesIO()
    image.save(png, format="PNG")

    doc = pymupdf.open()
    page = doc.new_page(width=595, height=842)
    page.insert_image(pymupdf.Rect(50, 50, 545, 421), stream=png.getvalue())
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def pdf_factory():
    return make_pdf


@pytest.fixture
def two_page_pdf():
    return make_pdf(["Page one content", "Page two content"])


@pytest.fixture
def single_page_pdf():
    return make_pdf(["Hello PDF World"])


@pytest.fixture
def jpeg_bytes():
    return make_image("JPEG")


@pytest.fixture
def png_bytes():
    return make_image("PNG", size=(100, 800))


@pytest.fixture
def image_pdf():
    return make_noisy_image_pdf()


@pytest.fixture
def store_upload(test_dirs):
    """Write bytes into the uploads directory and return the relative reference."""

    def _store(name, data):
        path = test_dirs["uploads"] / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return name

    return _store


@pytest.fixture
def seeded_submission(store_upload, two_page_pdf, jpeg_bytes, image_pdf):
    """
    A submission with a 2-page PDF, a JPEG, a Word file, a PDF with a large
    image and a PDF whose bytes are missing from the content store.
    """
    submission = Submission(
        id="sub-001",
        customer_name="Jane Doe",
        customer_email="jane@example.com",
        documents=[
            Document(
                id="doc-pdf",
                field_name="passports",
                original_name="passport.pdf",
                mime_type="application/pdf",
                size_bytes=len(two_page_pdf),
                content_reference=store_upload("sub-001/passport.pdf", two_page_pdf),
                upload_kind="local",
            ),
            Document(
                id="doc-jpeg",
                field_name="personalBankStatement",
                original_name="statement.jpg",
                mime_type="image/jpeg",
                size_bytes=len(jpeg_bytes),
                content_reference=store_upload("sub-001/statement.jpg", jpeg_bytes),
                upload_kind="local",
            ),
            Document(
                id="doc-word",
                field_name="coverLetter",
                original_name="cover.docx",
                mime_type="application/vnd.openxmlformats-officedocument.wordprocessingml.document",
                size_bytes=2 * 1024 * 1024,
                content_reference=store_upload("sub-001/cover.docx", b"PK\x03\x04 not really a docx"),
                upload_kind="local",
            ),
            Document(
                id="doc-scan",
                field_name="propertyDocuments",
                original_name="deed.pdf",
                mime_type="application/pdf",
                size_bytes=len(image_pdf),
                content_reference=store_upload("sub-001/deed.pdf", image_pdf),
                upload_kind="local",
            ),
            Document(
                id="doc-missing",
                field_name="hotelReservation",
                original_name="hotel.pdf",
                mime_type="application/pdf",
                size_bytes=1024,
                content_reference="sub-001/does-not-exist.pdf",
                upload_kind="local",
            ),
        ],
    )
    submission_db.save_submission(submission)
    return submission
