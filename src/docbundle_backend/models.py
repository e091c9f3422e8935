from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

PDF_MIME_TYPE = "application/pdf"


class DocumentKind(str, Enum):
    PDF = "pdf"
    IMAGE = "image"
    OTHER = "other"

    @classmethod
    def from_mime_type(cls, mime_type: Optional[str]) -> "DocumentKind":
        normalized = (mime_type or "").split(";", 1)[0].strip().lower()
        if normalized == PDF_MIME_TYPE:
            return cls.PDF
        if normalized.startswith("image/"):
            return cls.IMAGE
        return cls.OTHER


class UploadKind(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"


class Document(BaseModel):
    """
    Descriptor of one uploaded document, as held by the submission store.

    ``kind`` is derived from ``mime_type`` when the descriptor is built and is
    never recomputed afterwards.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    field_name: str
    original_name: str
    mime_type: str
    size_bytes: Optional[int] = None
    content_reference: str = ""
    upload_kind: UploadKind = UploadKind.REMOTE
    kind: DocumentKind = DocumentKind.OTHER

    @model_validator(mode="before")
    @classmethod
    def _resolve_kind(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            data["kind"] = DocumentKind.from_mime_type(data.get("mime_type"))
        return data

    @property
    def display_name(self) -> str:
        return self.original_name or self.field_name or self.id

    @property
    def size_mb(self) -> Optional[float]:
        if self.size_bytes is None:
            return None
        return self.size_bytes / 1024 / 1024


class Submission(BaseModel):
    id: str
    customer_name: str
    customer_email: str
    documents: List[Document] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def select_documents(self, document_ids: List[str]) -> List[Document]:
        """
        Return the documents named by ``document_ids``, in that order.

        Unknown ids are skipped; a repeated id only keeps its first position.
        """
        by_id = {document.id: document for document in self.documents}
        selected: List[Document] = []
        seen: set[str] = set()
        for document_id in document_ids:
            if document_id in seen or document_id not in by_id:
                continue
            seen.add(document_id)
            selected.append(by_id[document_id])
        return selected


class CompressionLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CompressionState(str, Enum):
    NOT_STARTED = "not_started"
    COMPRESSING = "compressing"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


class CompressionResult(BaseModel):
    document_id: str
    original_name: str
    original_size: int
    compressed_size: int
    ratio_percent: float
    quality_used: float
    attempts: int = 0
    state: CompressionState = CompressionState.NOT_STARTED
    succeeded: bool = False
    message: Optional[str] = None


class MergeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    submission_id: str = Field(alias="submissionId")
    document_ids: List[str] = Field(default_factory=list, alias="documentIds")
    customer_name: str = Field("", alias="customerName")
    customer_email: str = Field("", alias="customerEmail")
    filename: Optional[str] = None


class CompressRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    submission_id: str = Field(alias="submissionId")
    document_ids: Optional[List[str]] = Field(None, alias="documentIds")
    compression_level: Optional[CompressionLevel] = Field(None, alias="compressionLevel")
    customer_name: Optional[str] = Field(None, alias="customerName")


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
