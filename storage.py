"""S3-compatible object store adapter and multipart planning."""

import logging
import math
import os
import secrets
import time

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from errors import InvalidRequest, UpstreamUnavailable

logger = logging.getLogger(__name__)

MIB = 1024 * 1024
MIN_PART_SIZE = 5 * MIB
MAX_PART_SIZE = 5 * 1024 * MIB
MAX_UPLOAD_PARTS = 10000  # S3 multipart limit

_MISSING_CODES = {"NoSuchKey", "NoSuchUpload", "404", "NotFound"}


def calculate_part_size(size: int) -> int:
    if size <= MIN_PART_SIZE:
        return max(size, 1)
    part_size = math.ceil(size / MAX_UPLOAD_PARTS)
    return min(max(part_size, MIN_PART_SIZE), MAX_PART_SIZE)


def plan_parts(size: int):
    """Split ``size`` bytes into (part_number, start, end) ranges, ``end`` inclusive."""
    if size <= 0:
        return []
    part_size = calculate_part_size(size)
    count = math.ceil(size / part_size)
    if count > MAX_UPLOAD_PARTS:
        raise InvalidRequest("File is too large for a multipart upload")

    parts = []
    for index in range(count):
        start = index * part_size
        end = min(start + part_size, size) - 1
        parts.append({"partNumber": index + 1, "start": start, "end": end})
    return parts


def generate_object_key(account_id, file_name: str) -> str:
    _, extension = os.path.splitext(file_name)
    timestamp = int(time.time() * 1000)
    return f"{account_id}/{timestamp}-{secrets.token_hex(8)}{extension.lower()}"


def _is_missing(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in _MISSING_CODES


class S3ObjectStore:
    def __init__(self, client, bucket, presign_ttl=3600):
        self.client = client
        self.bucket = bucket
        self.presign_ttl = presign_ttl

    @classmethod
    def from_config(cls, config):
        client = boto3.client(
            "s3",
            endpoint_url=config.get("S3_ENDPOINT"),
            region_name=config.get("S3_REGION"),
            aws_access_key_id=config.get("S3_ACCESS_KEY"),
            aws_secret_access_key=config.get("S3_SECRET_KEY"),
            config=BotoConfig(
                signature_version="s3v4",
                s3={"addressing_style": "path" if config.get("S3_FORCE_PATH_STYLE") else "auto"},
                connect_timeout=5,
                read_timeout=30,
                retries={"max_attempts": 3},
            ),
        )
        return cls(client, config["S3_BUCKET"], config.get("PRESIGN_TTL_SECONDS", 3600))

    def create_multipart(self, key, content_type):
        try:
            result = self.client.create_multipart_upload(
                Bucket=self.bucket, Key=key, ContentType=content_type
            )
        except (ClientError, BotoCoreError) as e:
            raise UpstreamUnavailable(f"Could not start multipart upload: {e}")
        return result["UploadId"]

    def presign_part_url(self, key, upload_id, part_number, ttl=None):
        try:
            return self.client.generate_presigned_url(
                "upload_part",
                Params={
                    "Bucket": self.bucket,
                    "Key": key,
                    "UploadId": upload_id,
                    "PartNumber": part_number,
                },
                ExpiresIn=ttl or self.presign_ttl,
            )
        except (ClientError, BotoCoreError) as e:
            raise UpstreamUnavailable(f"Could not presign part upload: {e}")

    def complete_multipart(self, key, upload_id, parts):
        """``parts`` is a list of {"partNumber", "etag"} dicts."""
        payload = [
            {"ETag": part["etag"], "PartNumber": part["partNumber"]}
            for part in sorted(parts, key=lambda p: p["partNumber"])
        ]
        try:
            result = self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": payload},
            )
        except (ClientError, BotoCoreError) as e:
            raise UpstreamUnavailable(f"Could not complete multipart upload: {e}")
        return result.get("ETag")

    def abort_multipart(self, key, upload_id):
        try:
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
        except ClientError as e:
            if _is_missing(e):
                logger.info("Multipart upload %s for %s already gone", upload_id, key)
                return
            raise UpstreamUnavailable(f"Could not abort multipart upload: {e}")
        except BotoCoreError as e:
            raise UpstreamUnavailable(f"Could not abort multipart upload: {e}")

    def presign_download_url(self, key, ttl=None, filename=None):
        params = {"Bucket": self.bucket, "Key": key}
        if filename:
            params["ResponseContentDisposition"] = f'attachment; filename="{filename}"'
        try:
            return self.client.generate_presigned_url(
                "get_object", Params=params, ExpiresIn=ttl or self.presign_ttl
            )
        except (ClientError, BotoCoreError) as e:
            raise UpstreamUnavailable(f"Could not presign download: {e}")

    def put_object(self, key, body, content_type):
        try:
            result = self.client.put_object(
                Bucket=self.bucket, Key=key, Body=body, ContentType=content_type
            )
        except (ClientError, BotoCoreError) as e:
            raise UpstreamUnavailable(f"Could not store object: {e}")
        return result.get("ETag")

    def head_object(self, key):
        """Return {"size", "etag"} for ``key``, or None when it does not exist."""
        try:
            result = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_missing(e):
                return None
            raise UpstreamUnavailable(f"Could not inspect object: {e}")
        except BotoCoreError as e:
            raise UpstreamUnavailable(f"Could not inspect object: {e}")
        return {"size": result["ContentLength"], "etag": result.get("ETag")}

    def delete_object(self, key):
        # S3 reports success for absent keys; other backends may not.
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_missing(e):
                return
            raise UpstreamUnavailable(f"Could not delete object: {e}")
        except BotoCoreError as e:
            raise UpstreamUnavailable(f"Could not delete object: {e}")
