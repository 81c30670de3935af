"""
S3-compatible object storage for uploaded import files.
Uses boto3 so Backblaze B2, AWS S3, MinIO and friends all work the same way.
"""
import logging
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from leadflow.core.config import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageConnectionError(StorageError):
    """Raised when storage connection fails."""
    pass


class StorageUploadError(StorageError):
    """Raised when file upload fails."""
    pass


class StorageDownloadError(StorageError):
    """Raised when file download fails."""
    pass


def get_storage_client():
    """
    Get an S3-compatible storage client.

    Raises:
        StorageConnectionError: If configuration is incomplete or the client
            cannot be created.
    """
    if not all([settings.storage_access_key_id, settings.storage_secret_access_key, settings.storage_bucket_name]):
        raise StorageConnectionError(
            "Storage configuration is incomplete. Please set STORAGE_ACCESS_KEY_ID, "
            "STORAGE_SECRET_ACCESS_KEY, and STORAGE_BUCKET_NAME in your environment."
        )

    config = Config(
        signature_version='s3v4',
        retries={'max_attempts': 3, 'mode': 'standard'}
    )

    client_kwargs = {
        'service_name': 's3',
        'aws_access_key_id': settings.storage_access_key_id,
        'aws_secret_access_key': settings.storage_secret_access_key,
        'config': config,
    }
    if settings.storage_endpoint_url:
        client_kwargs['endpoint_url'] = settings.storage_endpoint_url
    if settings.storage_region:
        client_kwargs['region_name'] = settings.storage_region

    try:
        return boto3.client(**client_kwargs)
    except (BotoCoreError, ValueError) as e:
        logger.error(f"Failed to create storage client: {e}")
        raise StorageConnectionError(f"Failed to connect to storage: {str(e)}")


def upload_file(file_content: bytes, file_path: str, content_type: Optional[str] = None) -> Dict[str, Any]:
    """
    Upload bytes to ``file_path`` in the configured bucket.

    Returns:
        Dictionary with ``file_path``, ``etag`` and ``size``.

    Raises:
        StorageUploadError: If upload fails
    """
    try:
        client = get_storage_client()
        params = {
            'Bucket': settings.storage_bucket_name,
            'Key': file_path,
            'Body': file_content,
        }
        if content_type:
            params['ContentType'] = content_type
        response = client.put_object(**params)
        return {
            "file_path": file_path,
            "etag": response.get('ETag', '').strip('"'),
            "size": len(file_content),
        }
    except StorageConnectionError:
        raise
    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', 'Unknown')
        logger.error(f"Storage upload failed: {error_code} - {str(e)}")
        raise StorageUploadError(f"Upload failed: {str(e)}")
    except BotoCoreError as e:
        logger.error(f"Unexpected error during upload: {str(e)}")
        raise StorageUploadError(f"Upload failed: {str(e)}")


def download_file_to_path(file_path: str, destination: str) -> str:
    """
    Stream an object to a local file without holding it in memory.

    Returns:
        ``destination``

    Raises:
        StorageDownloadError: If the object is missing or the download fails
    """
    try:
        client = get_storage_client()
        with open(destination, "wb") as handle:
            client.download_fileobj(settings.storage_bucket_name, file_path, handle)
        return destination
    except StorageConnectionError:
        raise
    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', 'Unknown')
        if error_code in ('NoSuchKey', '404'):
            raise StorageDownloadError(f"File not found: {file_path}")
        logger.error(f"Storage download failed: {error_code} - {str(e)}")
        raise StorageDownloadError(f"Download failed: {str(e)}")
    except (BotoCoreError, OSError) as e:
        logger.error(f"Unexpected error during download: {str(e)}")
        raise StorageDownloadError(f"Download failed: {str(e)}")


def delete_file(file_path: str) -> bool:
    """Delete an object. Returns False instead of raising on failure."""
    try:
        client = get_storage_client()
        client.delete_object(Bucket=settings.storage_bucket_name, Key=file_path)
        return True
    except (StorageError, ClientError, BotoCoreError) as e:
        logger.error(f"Error deleting file from storage: {str(e)}")
        return False


def generate_presigned_download_url(
    file_path: str,
    expires_in: int = 3600,
    filename: Optional[str] = None
) -> str:
    """
    Generate a pre-signed URL for downloading the original upload.

    Raises:
        StorageError: If URL generation fails
    """
    try:
        client = get_storage_client()
        params = {
            'Bucket': settings.storage_bucket_name,
            'Key': file_path,
        }
        if filename:
            params['ResponseContentDisposition'] = f'attachment; filename="{filename}"'
        return client.generate_presigned_url('get_object', Params=params, ExpiresIn=expires_in)
    except StorageError:
        raise
    except (ClientError, BotoCoreError) as e:
        logger.error(f"Failed to generate presigned download URL: {str(e)}")
        raise StorageError(f"Failed to generate download URL: {str(e)}")
