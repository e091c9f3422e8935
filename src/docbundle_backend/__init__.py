"""
Docbundle Backend - REST API for submission document bundles

This package provides a FastAPI-based web service that turns the documents
attached to a submission into downloadable bundles. It enables:

- Merging PDFs, images and placeholders into one composite PDF
- Compressing selected PDFs toward a size budget
- Packaging compressed PDFs into a single zip archive
- Request-scoped scratch storage that is always cleaned up

Submission records and uploaded bytes live elsewhere; this service only reads
them through the submission store and the content store.

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - pipeline: Request coordinator (document resolution, ordered fan-out)
    - rendering: Per-document page rendering with placeholder fallback
    - assembler: Cover page, document pages and footer into one PDF
    - compression: Iterative PDF size reduction
    - archive: Zip packaging of compressed outputs
    - content_store: Byte retrieval over HTTP, S3 and the local filesystem
    - workspace: Temporary per-request directories
    - database: SQLite submission store
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn docbundle_backend.main:app --reload --host 0.0.0.0 --port 8000
"""
