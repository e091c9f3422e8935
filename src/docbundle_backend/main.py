from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, TypeVar

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .configuration import RuntimeSettings, make_runtime_config
from .content_store import build_fetcher
from .database import SubmissionDatabase
from .errors import PipelineError
from .models import CompressRequest, ErrorResponse, MergeRequest
from .pipeline import BundleArtifact, DocumentPipeline
from .utils import ensure_directory

logger = logging.getLogger(__name__)

T = TypeVar("T")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    pipeline.shutdown()
    fetcher.close()


app = FastAPI(title="Docbundle API", version="0.1.0", lifespan=lifespan)

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Compression-Summary"],
)

settings = RuntimeSettings.from_env()
runtime_config = make_runtime_config()
submission_db = SubmissionDatabase(settings.database_path)
fetcher = build_fetcher(runtime_config, ensure_directory(settings.upload_root), settings.s3_bucket_name)
pipeline = DocumentPipeline(
    store=submission_db,
    fetcher=fetcher,
    workspace_root=settings.workspace_root,
    config=runtime_config,
)


def get_pipeline() -> DocumentPipeline:
    return pipeline


class WorkspaceFileResponse(StreamingResponse):
    """
    Streams a file from a request workspace and releases the workspace afterwards.

    Release happens whether the body was fully sent, the transfer failed or
    the client went away.
    """

    def __init__(self, artifact: BundleArtifact, chunk_size: int = 64 * 1024) -> None:
        self.workspace = artifact.workspace
        headers = {
            "Content-Disposition": f'attachment; filename="{artifact.filename}"',
            "Content-Length": str(artifact.path.stat().st_size),
        }
        if artifact.results:
            summary = [result.model_dump(mode="json") for result in artifact.results]
            headers["X-Compression-Summary"] = json.dumps(summary, separators=(",", ":"))
        super().__init__(
            _iter_file(artifact.path, chunk_size),
            media_type=artifact.media_type,
            headers=headers,
        )

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.workspace.release()


def _iter_file(path: Path, chunk_size: int) -> Iterator[bytes]:
    with path.open("rb") as handle:
        while chunk := handle.read(chunk_size):
            yield chunk


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(message=message).model_dump())


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.url.path} failed: {exc.message}")
    return _error_response(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    detail = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()) if part != 'body')}: {error.get('msg')}"
        for error in errors
    )
    return _error_response(400, f"Invalid request: {detail}")


def _stream(artifact: BundleArtifact, manager: DocumentPipeline) -> WorkspaceFileResponse:
    try:
        return WorkspaceFileResponse(artifact, int(manager.config.pipeline.stream_chunk_size))
    except Exception:
        artifact.workspace.release()
        raise


def _run(operation: Callable[..., T], *args) -> T:
    try:
        return operation(*args)
    except PipelineError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected pipeline failure")
        raise PipelineError(f"Error: {str(exc) or 'Something went wrong'}") from exc


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/merge-pdfs")
def merge_pdfs(payload: MergeRequest, manager: DocumentPipeline = Depends(get_pipeline)) -> WorkspaceFileResponse:
    artifact = _run(manager.merge, payload)
    return _stream(artifact, manager)


@app.post("/compress-pdfs")
def compress_pdfs(payload: CompressRequest, manager: DocumentPipeline = Depends(get_pipeline)) -> WorkspaceFileResponse:
    artifact = _run(manager.compress, payload)
    return _stream(artifact, manager)
