from __future__ import annotations

import logging
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .constants import DEFAULT_ACCOUNT_ID
from .errors import ChecksumMismatchError, ServiceError
from .models import ByteRange, UploadResult
from .storage import StorageClient


logger = logging.getLogger(__name__)

RETRYABLE_CODES = frozenset(
    {
        "ThrottlingException",
        "Throttling",
        "RequestTimeoutException",
        "ServiceUnavailableException",
        "InternalFailure",
        "InternalServerError",
        "SlowDown",
    }
)

_TRANSIENT_NETWORK_ERRORS = (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError, ConnectTimeoutError)


def classify_client_error(exc: BaseException, operation: str) -> ServiceError:
    """Map a botocore exception to a ServiceError with a retryable verdict."""
    if isinstance(exc, ClientError):
        err = exc.response.get("Error", {})
        code = err.get("Code", "Unknown")
        message = err.get("Message", str(exc))
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        retryable = code in RETRYABLE_CODES or status == 429 or status >= 500
        return ServiceError(f"{operation} failed ({code}): {message}", retryable=retryable, cause=exc, code=code)
    if isinstance(exc, _TRANSIENT_NETWORK_ERRORS):
        return ServiceError(f"{operation} failed: {exc}", retryable=True, cause=exc, code=type(exc).__name__)
    return ServiceError(f"{operation} failed: {exc}", retryable=False, cause=exc, code=type(exc).__name__)


def _is_checksum_rejection(exc: ClientError) -> bool:
    err = exc.response.get("Error", {})
    return err.get("Code") == "InvalidParameterValueException" and "checksum mismatch" in err.get("Message", "").lower()


def make_glacier_client(
    region_name: Optional[str] = None,
    profile_name: Optional[str] = None,
    connect_timeout: float = 30,
    read_timeout: float = 300,
):
    """Build a boto3 Glacier client with per-call timeouts.

    botocore's own retries are disabled; the uploader owns the retry budget.
    """
    session = boto3.session.Session(profile_name=profile_name, region_name=region_name)
    config = Config(
        connect_timeout=connect_timeout,
        read_timeout=read_timeout,
        retries={"total_max_attempts": 1},
    )
    return session.client("glacier", config=config)


class GlacierStorage(StorageClient):
    """StorageClient backed by the S3 Glacier vault API via boto3."""

    def __init__(self, client: Any = None, *, account_id: str = DEFAULT_ACCOUNT_ID, archive_description: Optional[str] = None, **client_kwargs):
        self.client = client if client is not None else make_glacier_client(**client_kwargs)
        self.account_id = account_id
        self.archive_description = archive_description

    def initiate_upload(self, vault_name: str, part_size: int) -> str:
        params = {"accountId": self.account_id, "vaultName": vault_name, "partSize": str(part_size)}
        if self.archive_description:
            params["archiveDescription"] = self.archive_description
        try:
            resp = self.client.initiate_multipart_upload(**params)
        except (ClientError, BotoCoreError) as exc:
            raise classify_client_error(exc, "InitiateMultipartUpload") from exc
        upload_id = resp["uploadId"]
        logger.info("Initiated multipart upload %s in vault %s (part size %d)", upload_id, vault_name, part_size)
        return upload_id

    def upload_part(self, upload_id: str, vault_name: str, byte_range: ByteRange, tree_hash_hex: str, data: bytes) -> str:
        try:
            resp = self.client.upload_multipart_part(
                accountId=self.account_id,
                vaultName=vault_name,
                uploadId=upload_id,
                checksum=tree_hash_hex,
                range=byte_range.content_range(),
                body=data,
            )
        except ClientError as exc:
            if _is_checksum_rejection(exc):
                raise ChecksumMismatchError(tree_hash_hex, exc.response["Error"].get("Message", ""), byte_range) from exc
            raise classify_client_error(exc, "UploadMultipartPart") from exc
        except BotoCoreError as exc:
            raise classify_client_error(exc, "UploadMultipartPart") from exc
        return resp.get("checksum", "")

    def complete_upload(self, upload_id: str, vault_name: str, archive_tree_hash_hex: str, archive_length: int) -> UploadResult:
        try:
            resp = self.client.complete_multipart_upload(
                accountId=self.account_id,
                vaultName=vault_name,
                uploadId=upload_id,
                archiveSize=str(archive_length),
                checksum=archive_tree_hash_hex,
            )
        except (ClientError, BotoCoreError) as exc:
            raise classify_client_error(exc, "CompleteMultipartUpload") from exc
        return UploadResult(
            archive_id=resp.get("archiveId", ""),
            location=resp.get("location", ""),
            checksum=resp.get("checksum", ""),
            upload_id=upload_id,
            archive_length=archive_length,
        )

    def abort_upload(self, upload_id: str, vault_name: str) -> None:
        try:
            self.client.abort_multipart_upload(accountId=self.account_id, vaultName=vault_name, uploadId=upload_id)
        except (ClientError, BotoCoreError) as exc:
            raise classify_client_error(exc, "AbortMultipartUpload") from exc
