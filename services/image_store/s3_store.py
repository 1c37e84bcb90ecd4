"""S3-backed image storage for post images."""

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy.exc import SQLAlchemyError

from shared.db_operations import DatabaseOperations
from shared.errors import ImageStoreError
from services.image_store.exif import extract_exif_metadata

logger = logging.getLogger(__name__)

MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "image/tiff": "tiff",
    "image/svg+xml": "svg",
    "image/heic": "heic",
}


@dataclass
class StoredImage:
    """Where a stored image can be fetched from."""
    url: str
    filename: str
    exif: Optional[Dict[str, Any]] = None


def sanitize_filename(name: str) -> str:
    """Lowercase, web-safe, at most 50 characters."""
    cleaned = re.sub(r'[^a-z0-9\-_.]', '-', name.lower())
    cleaned = re.sub(r'-+', '-', cleaned).strip('-')
    return cleaned[:50].rstrip('-')


def extension_for(mime_type: str) -> str:
    return MIME_EXTENSIONS.get((mime_type or "").lower(), "jpg")


def build_image_filename(
    post_id: str,
    data: bytes,
    mime_type: str,
    title: Optional[str] = None,
    original_filename: Optional[str] = None
) -> str:
    """
    Name an image deterministically.

    The name is ``{post_id}_{label}_{hash8}.{ext}`` where the label comes from
    the media title, else the original filename without its extension, else
    ``image``. The same bytes for the same post always get the same name, so
    re-storing an image never changes the URL embedded in post content.
    """
    label = ""
    if title and title.strip():
        label = sanitize_filename(title.strip())
    if not label and original_filename and original_filename.strip():
        label = sanitize_filename(re.sub(r'\.[^.]*$', '', original_filename.strip()))
    if not label:
        label = "image"

    content_hash = hashlib.sha256(data).hexdigest()[:8]
    return f"{post_id}_{label}_{content_hash}.{extension_for(mime_type)}"


class S3ImageStore:
    """Stores post images in S3 and tracks them in the post_images table."""

    def __init__(
        self,
        db_ops: DatabaseOperations,
        bucket_name: str,
        region: str = "us-east-1",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        public_base_url: Optional[str] = None,
        key_prefix: str = "posts"
    ):
        """
        Initialize the image store.

        Args:
            db_ops: Database operations, used for the image index
            bucket_name: S3 bucket name
            region: AWS region
            access_key_id: AWS access key ID (optional, uses default credentials if not provided)
            secret_access_key: AWS secret access key (optional)
            public_base_url: CDN base URL; defaults to the bucket's public URL
            key_prefix: Folder inside the bucket for post images
        """
        self.db_ops = db_ops
        self.bucket_name = bucket_name
        self.region = region
        self.key_prefix = key_prefix
        self.public_base_url = (
            public_base_url or f"https://{bucket_name}.s3.{region}.amazonaws.com"
        ).rstrip("/")

        if access_key_id and secret_access_key:
            self.s3_client = boto3.client(
                's3',
                region_name=region,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key
            )
        else:
            # Use default credentials (from environment or IAM role)
            self.s3_client = boto3.client('s3', region_name=region)

    def _key(self, filename: str) -> str:
        return f"{self.key_prefix}/{filename}"

    async def store_image(
        self,
        data: bytes,
        content_hash: str,
        mime_type: str,
        post_id: str,
        title: Optional[str] = None,
        filename: Optional[str] = None
    ) -> StoredImage:
        """
        Upload an image for a post and index it by its source content hash.

        Args:
            data: Image bytes
            content_hash: Hash of the resource as reported by the note source
            mime_type: MIME type of the image
            post_id: Post the image belongs to
            title: Optional media title, used for a readable filename
            filename: Optional original filename

        Returns:
            StoredImage with the public URL, stored filename and camera metadata

        Raises:
            ImageStoreError: If the upload fails
        """
        stored_name = build_image_filename(str(post_id), data, mime_type, title, filename)
        key = self._key(stored_name)

        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=mime_type,
                ACL='public-read'
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to upload image to S3: {e}", exc_info=True)
            raise ImageStoreError(f"Failed to store image {content_hash}: {e}") from e

        exif = extract_exif_metadata(data)
        url = f"{self.public_base_url}/{key}"
        self.db_ops.add_post_image(
            post_id=post_id,
            content_hash=content_hash,
            filename=stored_name,
            url=url,
            mime_type=mime_type,
            size=len(data),
            exif_metadata=json.dumps(exif, sort_keys=True) if exif else None
        )

        logger.info(f"Stored image {stored_name} ({len(data)} bytes) for post {post_id}")
        return StoredImage(url=url, filename=stored_name, exif=exif)

    async def image_exists(self, content_hash: str, post_id: str) -> Optional[StoredImage]:
        """Return the already-stored image for this post and content hash, or None."""
        image = self.db_ops.find_post_image(post_id, content_hash)
        if not image:
            return None
        logger.debug(f"Image already exists: {image.filename}")
        exif = json.loads(image.exif_metadata) if image.exif_metadata else None
        return StoredImage(url=image.url, filename=image.filename, exif=exif)

    async def delete_post_images(self, post_id: str) -> None:
        """
        Delete every stored image of a post.

        Best-effort: failures are logged, never raised.
        """
        try:
            images = self.db_ops.list_post_images(post_id)
        except SQLAlchemyError as e:
            logger.error(f"Error listing images for post {post_id}: {e}", exc_info=True)
            return

        deleted = 0
        for image in images:
            try:
                self.s3_client.delete_object(Bucket=self.bucket_name, Key=self._key(image.filename))
                self.db_ops.delete_post_image(image.id)
                deleted += 1
            except (ClientError, BotoCoreError, SQLAlchemyError) as e:
                logger.error(f"Failed to delete image {image.filename}: {e}", exc_info=True)

        if deleted:
            logger.info(f"Deleted {deleted} images for post {post_id}")
