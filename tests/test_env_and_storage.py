import pytest
from botocore.exceptions import ClientError

import env_validation
from blob_store import BlobStoreError, LocalBlobStore, S3BlobStore, create_blob_store

_MANAGED_VARS = (
    "DB_PATH",
    "APP_URL",
    "BLOB_BACKEND",
    "BLOB_LOCAL_DIR",
    "CERTIFICATES_BUCKET",
    "CERTIFICATE_NUMBER_PREFIX",
    "DEFAULT_PASS_THRESHOLD",
    "IDENTITY_HEADER",
    "S3_ENDPOINT_URL",
    "S3_PUBLIC_BASE_URL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in _MANAGED_VARS:
        # setenv first so the teardown also drops defaults written by validate_environment
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


def test_validate_environment_applies_defaults(clean_env):
    env_validation.validate_environment()
    described = env_validation.describe_environment()
    assert described["BLOB_BACKEND"] == "local"
    assert described["DEFAULT_PASS_THRESHOLD"] == "70"
    assert described["IDENTITY_HEADER"] == "X-Authenticated-User"
    assert described["APP_URL"] == ""


@pytest.mark.parametrize(
    "name, value",
    [
        ("BLOB_BACKEND", "ftp"),
        ("APP_URL", "learn.example.org"),
        ("DEFAULT_PASS_THRESHOLD", "120"),
        ("DEFAULT_PASS_THRESHOLD", "seventy"),
        ("CERTIFICATE_NUMBER_PREFIX", "   "),
    ],
)
def test_validate_environment_rejects_bad_values(clean_env, name, value):
    clean_env.setenv(name, value)
    with pytest.raises(env_validation.EnvironmentError):
        env_validation.validate_environment()


def test_env_bool(monkeypatch):
    monkeypatch.setenv("CERTIFICATE_INLINE_FALLBACK", "off")
    assert env_validation.get_env_bool("CERTIFICATE_INLINE_FALLBACK", True) is False
    monkeypatch.setenv("CERTIFICATE_INLINE_FALLBACK", "Yes")
    assert env_validation.get_env_bool("CERTIFICATE_INLINE_FALLBACK") is True
    monkeypatch.delenv("CERTIFICATE_INLINE_FALLBACK")
    assert env_validation.get_env_bool("CERTIFICATE_INLINE_FALLBACK", True) is True


class _FakeS3Client:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def put_object(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error


def test_s3_store_uploads_and_builds_public_url():
    client = _FakeS3Client()
    store = S3BlobStore("certs", public_base_url="https://cdn.example.org/", client=client)
    url = store.put_object("u1/c1/t.pdf", b"%PDF", "application/pdf")
    assert url == "https://cdn.example.org/u1/c1/t.pdf"
    assert client.calls == [
        {"Bucket": "certs", "Key": "u1/c1/t.pdf", "Body": b"%PDF", "ContentType": "application/pdf"}
    ]


def test_s3_store_url_without_public_base():
    store = S3BlobStore("certs", endpoint_url="https://r2.example.org/", client=_FakeS3Client())
    assert store.put_object("k.pdf", b"x", "application/pdf") == "https://r2.example.org/certs/k.pdf"
    assert S3BlobStore("certs").object_url("k.pdf") == "https://certs.s3.amazonaws.com/k.pdf"


def test_s3_client_error_becomes_blob_store_error():
    error = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
    store = S3BlobStore("certs", client=_FakeS3Client(error))
    with pytest.raises(BlobStoreError) as excinfo:
        store.put_object("k.pdf", b"x", "application/pdf")
    assert "AccessDenied" in str(excinfo.value)


def test_create_blob_store_by_backend(clean_env, tmp_path):
    clean_env.setenv("BLOB_LOCAL_DIR", str(tmp_path))
    assert isinstance(create_blob_store("local"), LocalBlobStore)
    clean_env.setenv("CERTIFICATES_BUCKET", "my-bucket")
    s3 = create_blob_store("S3")
    assert isinstance(s3, S3BlobStore)
    assert s3.bucket == "my-bucket"
    with pytest.raises(ValueError):
        create_blob_store("ftp")
