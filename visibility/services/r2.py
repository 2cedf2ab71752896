"""
Cloudflare R2 blob storage — report artifact uploads.
"""
import logging
from typing import Union

from visibility.config import R2_BUCKET_NAME, R2_PUBLIC_URL
from visibility.errors import PipelineError
from visibility.extensions import r2_client

logger = logging.getLogger('services.r2')


class BlobStorageUnavailable(PipelineError):
    """R2 credentials are not configured."""
    retryable = False


def put_blob(key: str, body: Union[bytes, str], content_type: str = 'application/octet-stream') -> str:
    """Upload bytes under `key` and return the public URL."""
    if not r2_client:
        raise BlobStorageUnavailable("R2 client not available")

    if isinstance(body, str):
        body = body.encode('utf-8')

    r2_client.put_object(
        Bucket=R2_BUCKET_NAME, Key=key,
        Body=body, ContentType=content_type,
    )
    url = f"{R2_PUBLIC_URL}/{key}"
    logger.info("Uploaded %d bytes to R2: %s", len(body), key)
    return url
