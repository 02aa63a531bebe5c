"""
Session sync against an S3-compatible bucket (Cloudflare R2).

All sessions live in a single object, sessions.json, as {"sessions": [...]}.
Credentials come from the request or, failing that, from R2_* environment
variables.
"""

import os
import json
import base64
import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

SESSIONS_KEY = "sessions.json"
DEFAULT_BUCKET = "chatflow-sessions"


class StorageCredentials:
    """Endpoint, bucket and key pair for an S3-compatible store."""

    def __init__(self, endpoint: str = "", bucket: str = "",
                 access_key_id: str = "", secret_access_key: str = ""):
        self.endpoint = endpoint
        self.bucket = bucket
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StorageCredentials":
        data = data or {}
        return cls(
            endpoint=data.get("endpoint", ""),
            bucket=data.get("bucket", ""),
            access_key_id=data.get("accessKeyId", ""),
            secret_access_key=data.get("secretAccessKey", ""),
        )

    @classmethod
    def from_query_param(cls, value: Optional[str]) -> "StorageCredentials":
        """Decode the base64 JSON `creds` query parameter. Bad input yields empty credentials."""
        if not value:
            return cls()
        try:
            return cls.from_dict(json.loads(base64.b64decode(value).decode("utf-8")))
        except (ValueError, UnicodeDecodeError, AttributeError):
            return cls()

    def resolved(self) -> "StorageCredentials":
        """Fill blanks from R2_* environment variables."""
        return StorageCredentials(
            endpoint=self.endpoint or os.environ.get("R2_ENDPOINT", ""),
            bucket=self.bucket or os.environ.get("R2_BUCKET") or DEFAULT_BUCKET,
            access_key_id=self.access_key_id or os.environ.get("R2_ACCESS_KEY_ID", ""),
            secret_access_key=self.secret_access_key or os.environ.get("R2_SECRET_ACCESS_KEY", ""),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.endpoint and self.access_key_id and self.secret_access_key)


class SessionStorage:
    """Reads and writes sessions.json in one bucket."""

    def __init__(self, credentials: StorageCredentials):
        self.credentials = credentials.resolved()
        self._client = None

    @property
    def is_configured(self) -> bool:
        return self.credentials.is_configured

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name="auto",
                endpoint_url=self.credentials.endpoint,
                aws_access_key_id=self.credentials.access_key_id,
                aws_secret_access_key=self.credentials.secret_access_key,
            )
        return self._client

    def fetch(self) -> Dict[str, Any]:
        """
        Download the stored sessions.

        Returns {"sessions": []} when the object does not exist.

        Raises:
            botocore.exceptions.ClientError: For any other S3 failure
        """
        try:
            response = self.client.get_object(Bucket=self.credentials.bucket, Key=SESSIONS_KEY)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "NoSuchKey":
                return {"sessions": []}
            raise

        body = response["Body"].read().decode("utf-8")
        if not body:
            return {"sessions": []}
        return json.loads(body)

    def upload(self, sessions: List[Dict[str, Any]]) -> None:
        """Replace the stored sessions."""
        self.client.put_object(
            Bucket=self.credentials.bucket,
            Key=SESSIONS_KEY,
            Body=json.dumps({"sessions": sessions}).encode("utf-8"),
            ContentType="application/json",
        )
        logger.info("Uploaded %d sessions to %s", len(sessions), self.credentials.bucket)
