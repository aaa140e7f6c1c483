import pytest

from transcoder.ladder import DEFAULT_LADDER
from transcoder.s3 import StorageClient

from tests.fakes import FakeEncoder, FakeS3Client, RecordingBroker


@pytest.fixture
def s3_client():
    return FakeS3Client({"uploads/clip.mp4": b"source-bytes"})


@pytest.fixture
def storage(s3_client):
    return StorageClient(s3_client, bucket="test-bucket", attempts=3, retry_delay=2.0, sleep=lambda s: None)


@pytest.fixture
def encoder():
    return FakeEncoder()


@pytest.fixture
def broker():
    return RecordingBroker()


@pytest.fixture
def ladder():
    return DEFAULT_LADDER


@pytest.fixture
def workspace_root(tmp_path):
    return tmp_path / "workspaces"


@pytest.fixture
def make_upload(tmp_path):
    def _make(name="file.bin", data=b"payload"):
        p = tmp_path / name
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
        return p

    return _make
