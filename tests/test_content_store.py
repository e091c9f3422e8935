"""
Tests for content store fetching.

HTTP reads go through httpx.MockTransport; S3 reads use a stub client.
"""

import io
import time
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest
from botocore.exceptions import ClientError

from docbundle_backend import content_store
from docbundle_backend.configuration import make_runtime_config
from docbundle_backend.content_store import ContentFetcher, RetryConfig, build_fetcher
from docbundle_backend.errors import FetchError
from docbundle_backend.models import Document


class StubS3Client:
    def __init__(self, objects=None, error_code=None):
        self.objects = objects or {}
        self.error_code = error_code
        self.calls = []

    def get_object(self, Bucket, Key):
        self.calls.append((Bucket, Key))
        if self.error_code:
            raise ClientError({"Error": {"Code": self.error_code, "Message": "stub"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}


def _mock_http(responses):
    """Client whose transport replays ``responses`` (status codes or exceptions) in order."""
    calls = []

    def handler(request):
        calls.append(request)
        item = responses[min(len(calls), len(responses)) - 1]
        if isinstance(item, Exception):
            raise item
        return httpx.Response(item, content=b"%PDF-remote" if item == 200 else b"error")

    return httpx.Client(transport=httpx.MockTransport(handler)), calls


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fetcher_factory(tmp_path, sleeps):
    def _make(**kwargs):
        kwargs.setdefault("retry", RetryConfig(jitter=False))
        return ContentFetcher(upload_root=tmp_path, sleep=sleeps.append, **kwargs)

    return _make


class TestRetryConfig:
    def test_delays_grow_and_cap(self):
        retry = RetryConfig(jitter=False)
        assert [retry.delay_for(attempt) for attempt in range(5)] == [0.5, 1.0, 2.0, 4.0, 4.0]

    def test_jitter_bounds(self):
        retry = RetryConfig(jitter=True)
        for _ in range(20):
            assert 0.25 <= retry.delay_for(0) <= 0.75

    def test_from_config(self):
        retry = RetryConfig.from_config(make_runtime_config().fetch)
        assert retry.max_attempts == 3
        assert retry.initial_delay_seconds == 0.5


class TestLocalFetch:
    def test_relative_reference(self, tmp_path, fetcher_factory):
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "a.pdf").write_bytes(b"%PDF-local")

        assert fetcher_factory().fetch_reference("sub/a.pdf") == b"%PDF-local"

    def test_file_url(self, tmp_path, fetcher_factory):
        path = tmp_path / "b.pdf"
        path.write_bytes(b"%PDF-file-url")

        assert fetcher_factory().fetch_reference(path.as_uri()) == b"%PDF-file-url"

    def test_fetch_document(self, tmp_path, fetcher_factory):
        (tmp_path / "c.pdf").write_bytes(b"%PDF-doc")
        document = Document(
            id="c", field_name="passports", original_name="c.pdf",
            mime_type="application/pdf", content_reference="c.pdf", upload_kind="local",
        )
        assert fetcher_factory().fetch(document) == b"%PDF-doc"

    def test_missing_file_not_retried(self, fetcher_factory, sleeps):
        with pytest.raises(FetchError) as exc_info:
            fetcher_factory().fetch_reference("nope.pdf")
        assert exc_info.value.retryable is False
        assert sleeps == []

    def test_escape_rejected(self, fetcher_factory):
        with pytest.raises(FetchError, match="escapes"):
            fetcher_factory().fetch_reference("../outside.pdf")

    @pytest.mark.parametrize("reference", ["", "   "])
    def test_empty_reference(self, fetcher_factory, reference):
        with pytest.raises(FetchError):
            fetcher_factory().fetch_reference(reference)

    def test_unsupported_scheme(self, fetcher_factory):
        with pytest.raises(FetchError, match="Unsupported"):
            fetcher_factory().fetch_reference("ftp://example.com/a.pdf")


class TestHttpFetch:
    def test_success(self, fetcher_factory):
        client, calls = _mock_http([200])
        assert fetcher_factory(http_client=client).fetch_reference("https://cdn.example.com/a.pdf") == b"%PDF-remote"
        assert len(calls) == 1

    def test_transient_errors_retried(self, fetcher_factory, sleeps):
        client, calls = _mock_http([503, 429, 200])

        data = fetcher_factory(http_client=client).fetch_reference("https://cdn.example.com/a.pdf")

        assert data == b"%PDF-remote"
        assert len(calls) == 3
        assert sleeps == [0.5, 1.0]

    def test_timeout_retried(self, fetcher_factory, sleeps):
        client, calls = _mock_http([httpx.ReadTimeout("slow"), 200])

        assert fetcher_factory(http_client=client).fetch_reference("https://cdn.example.com/a.pdf") == b"%PDF-remote"
        assert len(calls) == 2
        assert len(sleeps) == 1

    def test_gives_up_after_max_attempts(self, fetcher_factory, sleeps):
        client, calls = _mock_http([500])

        with pytest.raises(FetchError, match="HTTP 500"):
            fetcher_factory(http_client=client).fetch_reference("https://cdn.example.com/a.pdf")
        assert len(calls) == 3
        assert len(sleeps) == 2

    def test_client_error_not_retried(self, fetcher_factory, sleeps):
        client, calls = _mock_http([404])

        with pytest.raises(FetchError) as exc_info:
            fetcher_factory(http_client=client).fetch_reference("https://cdn.example.com/a.pdf")
        assert exc_info.value.retryable is False
        assert len(calls) == 1
        assert sleeps == []


class TestS3Fetch:
    def test_success(self, fetcher_factory):
        s3 = StubS3Client(objects={("bucket", "uploads/a b.pdf"): b"%PDF-s3"})
        fetcher = fetcher_factory(s3_client=s3)

        assert fetcher.fetch_reference("s3://bucket/uploads/a%20b.pdf") == b"%PDF-s3"
        assert s3.calls == [("bucket", "uploads/a b.pdf")]

    def test_default_bucket(self, fetcher_factory):
        s3 = StubS3Client(objects={("fallback", "k.pdf"): b"%PDF"})
        fetcher = fetcher_factory(s3_client=s3, default_bucket="fallback")

        assert fetcher.fetch_reference("s3:///k.pdf") == b"%PDF"

    def test_missing_key_not_retried(self, fetcher_factory, sleeps):
        s3 = StubS3Client(error_code="NoSuchKey")

        with pytest.raises(FetchError) as exc_info:
            fetcher_factory(s3_client=s3).fetch_reference("s3://bucket/missing.pdf")
        assert exc_info.value.retryable is False
        assert len(s3.calls) == 1
        assert sleeps == []

    def test_throttling_retried(self, fetcher_factory, sleeps):
        s3 = StubS3Client(error_code="SlowDown")

        with pytest.raises(FetchError):
            fetcher_factory(s3_client=s3).fetch_reference("s3://bucket/a.pdf")
        assert len(s3.calls) == 3
        assert len(sleeps) == 2


def test_build_fetcher_uses_config(tmp_path):
    config = make_runtime_config({"fetch": {"max_attempts": 5, "timeout_seconds": 3.0}})
    fetcher = build_fetcher(config, tmp_path, default_bucket="b")

    assert fetcher.retry.max_attempts == 5
    assert fetcher.timeout_seconds == 3.0
    assert fetcher.upload_root == tmp_path


def test_clients_created_once_under_concurrency(tmp_path, monkeypatch):
    created = []

    def slow_client(service_name):
        time.sleep(0.05)
        client = StubS3Client()
        created.append(client)
        return client

    monkeypatch.setattr(content_store.boto3, "client", slow_client)
    fetcher = ContentFetcher(upload_root=tmp_path)

    with ThreadPoolExecutor(max_workers=8) as executor:
        clients = list(executor.map(lambda _: fetcher.s3_client, range(8)))

    assert len(created) == 1
    assert all(client is created[0] for client in clients)
