"""Upload bench artifacts (recordings, screenshots, charts) to S3."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

log = logging.getLogger("webhook.storage")


class ArtifactStore:
    def __init__(
        self,
        bucket_name: str,
        region: str,
        access_key_id: str = "",
        secret_access_key: str = "",
        client: Optional[Any] = None,
    ):
        self.bucket_name = bucket_name
        self.region = region
        if client is None:
            session_kwargs = {"region_name": region}
            if access_key_id and secret_access_key:
                session_kwargs["aws_access_key_id"] = access_key_id
                session_kwargs["aws_secret_access_key"] = secret_access_key
            client = boto3.Session(**session_kwargs).client("s3")
        self.s3_client = client

    def public_url(self, key: str) -> str:
        return f"https://{self.bucket_name}.s3.{self.region}.amazonaws.com/{key}"

    def upload(self, file_path: Path, key: Optional[str] = None) -> Optional[str]:
        """
        Upload a file and return its public URL, or None if the upload failed.

        The object key defaults to the file name.
        """
        file_path = Path(file_path)
        key = key or file_path.name
        if not file_path.exists():
            log.warning("File does not exist, cannot upload to S3: %s", file_path)
            return None

        extra_args = {}
        if file_path.suffix.lower() == ".png":
            extra_args["ContentType"] = "image/png"
        try:
            self.s3_client.upload_file(str(file_path), self.bucket_name, key, ExtraArgs=extra_args)
        except (ClientError, BotoCoreError) as e:
            log.error("Failed to upload %s to S3: %s", file_path, e)
            return None
        log.info("Object '%s' uploaded to bucket '%s'.", key, self.bucket_name)
        return self.public_url(key)
