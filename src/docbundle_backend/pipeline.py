"""
Request coordination for the merge and compression pipelines.

This module ties the components together for one request:
- Resolving the submission and the requested documents, in requested order
- Fetching (and compressing) documents in parallel on a bounded thread pool
- Joining per-document outcomes back into requested order
- Owning the request's TempWorkspace until the response takes it over

The DocumentPipeline holds no per-request state; everything a request needs
lives in local variables and in its own workspace.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Union

from omegaconf import DictConfig

from .archive import ArchivePackager
from .assembler import Branding, CompositeAssembler, CompositeOutput
from .compression import CompressionEngine, CompressionOutcome, CompressionPolicy
from .configuration import make_runtime_config
from .errors import CompressionFailure, FetchError, NotFoundError, ValidationError
from .models import (
    CompressionLevel,
    CompressionResult,
    CompressionState,
    CompressRequest,
    Document,
    DocumentKind,
    MergeRequest,
    Submission,
)
from .rendering import PageGeometry, PageRenderer
from .utils import ensure_directory, safe_download_name, safe_entry_name, timestamp_ms
from .workspace import TempWorkspace

logger = logging.getLogger(__name__)


class SubmissionStore(Protocol):
    def get_submission(self, submission_id: str) -> Optional[Submission]: ...


class Fetcher(Protocol):
    def fetch(self, document: Document) -> bytes: ...


@dataclass
class BundleArtifact:
    """
    A finished download waiting to be streamed.

    The workspace holding ``path`` belongs to whoever streams the artifact;
    it must be released once the response is done.
    """

    path: Path
    filename: str
    media_type: str
    workspace: TempWorkspace
    composite: Optional[CompositeOutput] = None
    results: List[CompressionResult] = field(default_factory=list)


class DocumentPipeline:
    """
    Entry point for merge and compression requests.

    Thread Safety:
        Requests may call ``merge`` and ``compress`` concurrently; the only
        shared objects are the thread pool, the store and the fetcher.
    """

    def __init__(
        self,
        store: SubmissionStore,
        fetcher: Fetcher,
        workspace_root: Path,
        config: DictConfig | None = None,
        compression_engine: CompressionEngine | None = None,
    ) -> None:
        self.config = config if config is not None else make_runtime_config()
        self.store = store
        self.fetcher = fetcher
        self.workspace_root = ensure_directory(Path(workspace_root))
        self.workspace_prefix = str(self.config.pipeline.workspace_prefix)

        renderer = PageRenderer(PageGeometry.from_config(self.config.page))
        self.assembler = CompositeAssembler(renderer, Branding.from_config(self.config.branding))
        self.compression_engine = compression_engine or CompressionEngine(
            CompressionPolicy.from_config(self.config.compression)
        )
        self.packager = ArchivePackager()
        self._executor = ThreadPoolExecutor(max_workers=int(self.config.pipeline.max_workers))

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def _load_submission(self, submission_id: str) -> Submission:
        submission = self.store.get_submission(submission_id)
        if submission is None:
            raise NotFoundError("Submission not found")
        return submission

    def _fetch_one(self, document: Document) -> Union[bytes, FetchError]:
        try:
            return self.fetcher.fetch(document)
        except FetchError as exc:
            return exc

    def fetch_all(self, documents: List[Document]) -> List[Union[bytes, FetchError]]:
        """
        Fetch every document in parallel.

        Returns:
            Bytes or FetchError per document, aligned with ``documents``
            (requested order, not completion order)
        """
        futures = [self._executor.submit(self._fetch_one, document) for document in documents]
        return [future.result() for future in futures]

    def merge(self, request: MergeRequest) -> BundleArtifact:
        """
        Build the composite PDF for a merge request.

        Raises:
            NotFoundError: unknown submission
            ValidationError: none of the requested ids belong to the submission
            SerializationFailure: the composite could not be written
        """
        submission = self._load_submission(request.submission_id)
        documents = submission.select_documents(request.document_ids)
        if not documents:
            raise ValidationError("No documents selected")

        logger.info(f"Merging {len(documents)} documents for submission {submission.id}")
        payloads = self.fetch_all(documents)

        with ExitStack() as stack:
            workspace = stack.enter_context(TempWorkspace(self.workspace_root, self.workspace_prefix))
            composite = self.assembler.assemble(
                documents,
                payloads,
                customer_name=request.customer_name or submission.customer_name,
                customer_email=request.customer_email or submission.customer_email,
            )
            base_name = safe_download_name(request.filename, request.customer_name, fallback="merged_documents")
            filename = f"{base_name}_{timestamp_ms()}.pdf"
            path = workspace.write_bytes(filename, composite.pdf_bytes)
            # Success: the caller now owns the workspace
            stack.pop_all()

        return BundleArtifact(
            path=path,
            filename=filename,
            media_type="application/pdf",
            workspace=workspace,
            composite=composite,
        )

    def _compress_one(
        self,
        index: int,
        document: Document,
        level: Optional[CompressionLevel],
        workspace: TempWorkspace,
    ) -> CompressionOutcome:
        try:
            data = self.fetcher.fetch(document)
        except FetchError as exc:
            return self._failed_outcome(document, document.size_bytes or 0, exc.message)

        outcome = self.compression_engine.compress(document.id, document.original_name, data, level)
        if outcome.result.succeeded:
            entry = safe_entry_name(document.original_name)
            try:
                outcome.path = workspace.write_bytes(f"compressed_{index}_{entry}", outcome.data)
            except (OSError, ValueError) as exc:
                logger.warning(f"Could not store compressed {document.display_name}: {exc}")
                return self._failed_outcome(document, len(data), f"Could not store compressed file: {exc}")
        return outcome

    def _failed_outcome(self, document: Document, original_size: int, message: str) -> CompressionOutcome:
        return CompressionOutcome(
            result=CompressionResult(
                document_id=document.id,
                original_name=document.original_name,
                original_size=original_size,
                compressed_size=original_size,
                ratio_percent=0.0,
                quality_used=0.0,
                state=CompressionState.FAILED,
                succeeded=False,
                message=message,
            ),
            data=b"",
        )

    def compress(self, request: CompressRequest) -> BundleArtifact:
        """
        Compress the requested PDFs and package the results as a zip.

        Raises:
            ValidationError: no ids given, or none of them is a PDF of the submission
            NotFoundError: unknown submission
            CompressionFailure: no document could be compressed
            ArchiveFailure: the zip could not be written
        """
        if not request.document_ids:
            raise ValidationError("No documents selected for compression")

        submission = self._load_submission(request.submission_id)
        documents = [
            document
            for document in submission.select_documents(request.document_ids)
            if document.kind is DocumentKind.PDF
        ]
        if not documents:
            raise ValidationError("No valid PDF documents found")

        logger.info(f"Compressing {len(documents)} PDFs for submission {submission.id}")
        with ExitStack() as stack:
            workspace = stack.enter_context(TempWorkspace(self.workspace_root, self.workspace_prefix))
            futures = [
                self._executor.submit(self._compress_one, index, document, request.compression_level, workspace)
                for index, document in enumerate(documents)
            ]
            outcomes = [future.result() for future in futures]

            succeeded = sum(1 for outcome in outcomes if outcome.result.succeeded)
            if succeeded == 0:
                raise CompressionFailure("Failed to compress any documents")
            logger.info(f"Compressed {succeeded}/{len(outcomes)} documents for submission {submission.id}")

            archive_name = f"{safe_download_name(request.customer_name, fallback='compressed')}_pdfs.zip"
            path = self.packager.package(outcomes, workspace, archive_name)
            stack.pop_all()

        return BundleArtifact(
            path=path,
            filename=archive_name,
            media_type="application/zip",
            workspace=workspace,
            results=[outcome.result for outcome in outcomes],
        )
