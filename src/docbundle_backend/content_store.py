"""
Content store access: fetch the bytes behind a document's content reference.

Supported references:
- ``http://`` / ``https://`` URLs, read with httpx
- ``s3://bucket/key`` objects, read with boto3
- ``file://`` URLs and filesystem paths; relative paths resolve against the
  uploads directory

Transient failures (timeouts, connection errors, 5xx and 429 responses) are
retried with exponential backoff and jitter. Every failure surfaces as
``FetchError``; callers decide how to degrade.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Optional
from urllib.parse import unquote, urlparse

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError
from omegaconf import DictConfig

from .errors import FetchError
from .models import Document

logger = logging.getLogger(__name__)

_MISSING_S3_CODES = {"NoSuchKey", "NoSuchBucket", "404", "AccessDenied", "403"}


@dataclass
class RetryConfig:
    """
    Retry policy for content fetches.

    Attributes:
        max_attempts: Maximum number of attempts (including the first)
        initial_delay_seconds: Delay before the first retry
        max_delay_seconds: Upper bound for any single delay
        exponential_base: Growth factor between consecutive delays
        jitter: Randomize each delay between 50% and 150%
    """

    max_attempts: int = 3
    initial_delay_seconds: float = 0.5
    max_delay_seconds: float = 4.0
    exponential_base: float = 2.0
    jitter: bool = True

    @classmethod
    def from_config(cls, fetch_config: DictConfig) -> "RetryConfig":
        return cls(
            max_attempts=int(fetch_config.max_attempts),
            initial_delay_seconds=float(fetch_config.initial_delay_seconds),
            max_delay_seconds=float(fetch_config.max_delay_seconds),
            exponential_base=float(fetch_config.exponential_base),
            jitter=bool(fetch_config.jitter),
        )

    def delay_for(self, attempt: int) -> float:
        delay = min(
            self.initial_delay_seconds * (self.exponential_base ** attempt),
            self.max_delay_seconds,
        )
        if self.jitter:
            delay = delay * (0.5 + random.random())
        return delay


class ContentFetcher:
    """
    Reads complete payloads from the content store.

    The fetcher holds no per-request state and can be shared across threads.
    The httpx and boto3 clients are created once, under a lock, on first use.
    """

    def __init__(
        self,
        upload_root: Path,
        retry: RetryConfig | None = None,
        timeout_seconds: float = 30.0,
        http_client: httpx.Client | None = None,
        s3_client: Any = None,
        default_bucket: str = "",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.upload_root = Path(upload_root)
        self.retry = retry or RetryConfig()
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client
        self._s3_client = s3_client
        self._default_bucket = default_bucket
        self._sleep = sleep
        self._client_lock = Lock()

    @property
    def http_client(self) -> httpx.Client:
        if self._http_client is None:
            with self._client_lock:
                if self._http_client is None:
                    self._http_client = httpx.Client(timeout=self.timeout_seconds, follow_redirects=True)
        return self._http_client

    @property
    def s3_client(self):
        if self._s3_client is None:
            with self._client_lock:
                if self._s3_client is None:
                    self._s3_client = boto3.client("s3")
        return self._s3_client

    def close(self) -> None:
        with self._client_lock:
            if self._http_client is not None:
                self._http_client.close()

    def fetch(self, document: Document) -> bytes:
        """
        Fetch the bytes for a document.

        Raises:
            FetchError: the reference is empty, unreachable, or the read failed
        """
        return self.fetch_reference(document.content_reference)

    def fetch_reference(self, reference: str) -> bytes:
        reference = (reference or "").strip()
        if not reference:
            raise FetchError("Document has no content reference", reference=reference)

        scheme = urlparse(reference).scheme.lower()
        if scheme in ("http", "https"):
            reader = lambda: self._fetch_http(reference)  # noqa: E731
        elif scheme == "s3":
            reader = lambda: self._fetch_s3(reference)  # noqa: E731
        elif scheme in ("", "file"):
            reader = lambda: self._fetch_local(reference)  # noqa: E731
        else:
            raise FetchError(f"Unsupported content reference scheme: {scheme}", reference=reference)

        return self._with_retry(reader, reference)

    def _with_retry(self, reader: Callable[[], bytes], reference: str) -> bytes:
        for attempt in range(self.retry.max_attempts):
            try:
                return reader()
            except FetchError as exc:
                if not exc.retryable or attempt == self.retry.max_attempts - 1:
                    logger.warning(f"Fetch failed for {reference}: {exc.message}")
                    raise
                delay = self.retry.delay_for(attempt)
                logger.warning(
                    f"Fetch attempt {attempt + 1}/{self.retry.max_attempts} failed for {reference}: "
                    f"{exc.message}. Retrying in {delay:.2f}s..."
                )
                self._sleep(delay)
        raise FetchError(f"No fetch attempts made for {reference}", reference=reference)

    def _fetch_http(self, url: str) -> bytes:
        try:
            response = self.http_client.get(url, timeout=self.timeout_seconds)
        except httpx.TimeoutException as exc:
            raise FetchError(f"Timed out fetching {url}", reference=url, retryable=True) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Could not reach {url}: {exc}", reference=url, retryable=True) from exc

        if not response.is_success:
            retryable = response.status_code >= 500 or response.status_code == 429
            raise FetchError(
                f"Content store returned HTTP {response.status_code} for {url}",
                reference=url,
                retryable=retryable,
            )
        return response.content

    def _fetch_s3(self, reference: str) -> bytes:
        parsed = urlparse(reference)
        bucket = parsed.netloc or self._default_bucket
        key = unquote(parsed.path.lstrip("/"))
        if not bucket or not key:
            raise FetchError(f"Invalid S3 reference: {reference}", reference=reference)

        try:
            response = self.s3_client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except NoCredentialsError as exc:
            raise FetchError("S3 credentials are not configured", reference=reference) from exc
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            raise FetchError(
                f"S3 read failed for {reference}: {code or exc}",
                reference=reference,
                retryable=code not in _MISSING_S3_CODES,
            ) from exc
        except BotoCoreError as exc:
            raise FetchError(f"S3 read failed for {reference}: {exc}", reference=reference, retryable=True) from exc

    def _resolve_local_path(self, reference: str) -> Path:
        parsed = urlparse(reference)
        raw_path = unquote(parsed.path) if parsed.scheme == "file" else reference
        path = Path(raw_path)
        if path.is_absolute():
            return path

        root = self.upload_root.resolve()
        resolved = (root / path).resolve()
        if root != resolved and root not in resolved.parents:
            raise FetchError(f"Local reference escapes the uploads directory: {reference}", reference=reference)
        return resolved

    def _fetch_local(self, reference: str) -> bytes:
        path = self._resolve_local_path(reference)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise FetchError(f"File not found: {path}", reference=reference) from exc
        except OSError as exc:
            raise FetchError(f"Could not read {path}: {exc}", reference=reference) from exc


def build_fetcher(config: DictConfig, upload_root: Path, default_bucket: str = "", http_client: Optional[httpx.Client] = None) -> ContentFetcher:
    """Create a ContentFetcher from the ``fetch`` config section."""
    return ContentFetcher(
        upload_root=upload_root,
        retry=RetryConfig.from_config(config.fetch),
        timeout_seconds=float(config.fetch.timeout_seconds),
        http_client=http_client,
        default_bucket=default_bucket,
    )
