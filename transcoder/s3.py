import logging
import time
from pathlib import Path, PurePosixPath

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings

logger = logging.getLogger(__name__)

# Minimal content-type hints for HLS assets
HLS_CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/MP2T",
    ".m2ts": "video/MP2T",
}

TRANSPORT_ERRORS = (BotoCoreError, ClientError, OSError)


def _build_client(endpoint_url: str):
    session = boto3.session.Session(
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        region_name=settings.S3_REGION,
    )
    return session.client(
        "s3",
        endpoint_url=endpoint_url,  # e.g. http://127.0.0.1:9000
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",  # ensures AWS4 signing
        ),
    )


def get_s3_client():
    """
    SDK client for server-side upload/download.
    """
    return _build_client(settings.S3_ENDPOINT_URL)


def get_presign_client():
    """
    Separate client for generating presigned URLs that the browser/curl will call.
    Uses S3_PUBLIC_ENDPOINT so the URL host matches what the client reaches.
    """
    return _build_client(settings.S3_PUBLIC_ENDPOINT)


def create_presigned_put(key: str, content_type: str | None = None, expires: int | None = None) -> dict:
    """
    Create a presigned PUT URL to upload a single source video directly to S3/MinIO.

    ContentType is deliberately left out of the signed params so clients that
    omit or alter the header still match the signature.
    """
    s3 = get_presign_client()
    url = s3.generate_presigned_url(
        ClientMethod="put_object",
        Params={"Bucket": settings.S3_BUCKET, "Key": key},
        ExpiresIn=expires or settings.S3_PRESIGN_EXPIRE_SECONDS,
        HttpMethod="PUT",
    )
    headers = {"Content-Type": content_type} if content_type else {}
    return {"url": url, "headers": headers}


def object_url(key: str) -> str:
    """
    Direct object URL against the PUBLIC endpoint. HLS players fetch the
    sub-manifests and segments relative to this, so packages need a bucket
    policy allowing anonymous GET under the HLS prefix.
    """
    return f"{settings.S3_PUBLIC_ENDPOINT}/{settings.S3_BUCKET}/{key}"


def guess_content_type(path) -> str | None:
    return HLS_CONTENT_TYPES.get(Path(path).suffix.lower())


class StorageClient:
    """
    Object store access used by the worker and the intake views.

    ``put`` retries a bounded number of times, reopening the local file for
    each attempt; ``get`` makes a single attempt.
    """

    def __init__(
        self,
        client=None,
        bucket: str | None = None,
        *,
        attempts: int | None = None,
        retry_delay: float | None = None,
        sleep=time.sleep,
    ):
        self._client = client
        self.bucket = bucket or settings.S3_BUCKET
        self.attempts = attempts if attempts is not None else settings.UPLOAD_ATTEMPTS
        self.retry_delay = retry_delay if retry_delay is not None else settings.UPLOAD_RETRY_DELAY
        self._sleep = sleep
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")

    @property
    def client(self):
        if self._client is None:
            self._client = get_s3_client()
        return self._client

    def put(self, local_path, key: str, content_type: str | None = None) -> None:
        content_type = content_type or guess_content_type(local_path)
        extra = {"ContentType": content_type} if content_type else {}

        for attempt in range(1, self.attempts + 1):
            try:
                # A fresh handle per attempt; a failed attempt may have consumed the last one.
                with open(local_path, "rb") as body:
                    self.client.put_object(Bucket=self.bucket, Key=key, Body=body, **extra)
            except TRANSPORT_ERRORS as exc:
                logger.warning("Upload failed (attempt %d/%d): %s: %s", attempt, self.attempts, key, exc)
                if attempt == self.attempts:
                    raise
                self._sleep(self.retry_delay)
            else:
                logger.debug("Uploaded %s -> s3://%s/%s", local_path, self.bucket, key)
                return

    def get(self, key: str, local_path) -> None:
        logger.info("Downloading s3://%s/%s", self.bucket, key)
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        self.client.download_file(self.bucket, key, str(local_path))

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise
        return True

    def put_tree(self, local_dir, key_prefix: str) -> list[str]:
        """
        Recursively upload every file under local_dir to key_prefix, keeping
        subdirectories as key segments. The first file whose retries run out
        aborts the walk and its error propagates.
        """
        base = Path(local_dir)
        uploaded = []
        for p in sorted(base.rglob("*")):
            if not p.is_file():
                continue
            rel = PurePosixPath(*p.relative_to(base).parts)
            key = f"{key_prefix.rstrip('/')}/{rel}"
            self.put(p, key)
            uploaded.append(key)
        return uploaded

    def list_packages(self, prefix: str | None = None) -> set[str]:
        """
        Distinct package identifiers directly under prefix, e.g.
        hls/abc/master.m3u8 and hls/abc/360p/index.m3u8 both yield "abc".
        """
        prefix = (prefix or settings.HLS_PREFIX).rstrip("/") + "/"
        packages = set()
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                rest = item["Key"][len(prefix):]
                name = rest.split("/", 1)[0]
                if name:
                    packages.add(name)
        return packages
