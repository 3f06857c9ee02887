"""
IIIF publication of master file images.

This module provides functionality for:
- Deriving the S3 key of a master file's JPEG 2000 from its PID
- Converting TIFF masters to JPEG 2000 in a staging directory
- Uploading to, checking and removing from the IIIF S3 bucket

The bucket is configured via ``iiif.bucket`` (``IIIF_BUCKET`` in the
environment). When no bucket is configured every operation raises
:class:`PublicationError`, which callers log without failing their batch.
"""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image

from .errors import PublicationError
from .records import MasterFile, TechMetadata
from .utils import ensure_directory

logger = logging.getLogger(__name__)

PUBLISHABLE_FORMATS = {"TIFF", "JP2", "JPEG2000"}


@dataclass(frozen=True)
class IIIFContext:
    filename: str
    bucket_prefix: str
    stage_path: Path

    @property
    def s3_key(self) -> str:
        return f"{self.bucket_prefix}/{self.filename}"


class Publisher(Protocol):
    def publish(self, master_file: MasterFile, tech_metadata: Optional[TechMetadata], source_path: Path, overwrite: bool) -> None: ...

    def unpublish(self, master_file: MasterFile) -> None: ...


def iiif_context(pid: str, staging_dir: Path) -> IIIFContext:
    """
    Build the IIIF location for a PID.

    ``tsm:1234567`` is stored as ``tsm/12/34/56/7/1234567.jp2``.
    """
    namespace, base = pid.split(":", 1)
    filename = f"{base}.jp2"
    parts = [base[idx:idx + 2] for idx in range(0, len(base), 2)]
    return IIIFContext(
        filename=filename,
        bucket_prefix="/".join([namespace, *parts]),
        stage_path=Path(staging_dir) / filename,
    )


class IIIFPublisher:
    """
    Publish master files to the S3 bucket behind the IIIF image server.

    Args:
        bucket: S3 bucket name; empty disables publication
        staging_dir: Where JPEG 2000 files are staged before upload
        jp2_rate: Compression rate passed to the JPEG 2000 encoder
    """

    def __init__(self, bucket: str, staging_dir: Path, jp2_rate: float = 50.0) -> None:
        self.bucket = bucket
        self.staging_dir = Path(staging_dir)
        self.jp2_rate = jp2_rate
        self._s3_client = None

    def _get_s3_client(self):
        """
        Get or create the S3 client.

        Returns:
            boto3 S3 client or None if bucket is not configured
        """
        if self._s3_client is None:
            if not self.bucket:
                logger.warning("IIIF bucket not configured")
                return None
            try:
                self._s3_client = boto3.client("s3")
            except (BotoCoreError, ClientError) as e:
                logger.warning(f"Failed to create S3 client: {e}")
                self._s3_client = None
        return self._s3_client

    def _require_client(self):
        client = self._get_s3_client()
        if client is None:
            raise PublicationError("IIIF bucket is not configured")
        return client

    def context_for(self, master_file: MasterFile) -> IIIFContext:
        return iiif_context(master_file.pid, self.staging_dir)

    def exists(self, master_file: MasterFile) -> bool:
        client = self._require_client()
        ctx = self.context_for(master_file)
        try:
            out = client.list_objects_v2(Bucket=self.bucket, Prefix=ctx.bucket_prefix, MaxKeys=1)
        except (BotoCoreError, ClientError) as e:
            raise PublicationError(f"Unable to check for existence of {master_file.pid}: {e}") from e
        return out.get("KeyCount", len(out.get("Contents", []))) > 0

    def _stage(self, source_path: Path, image_format: str, ctx: IIIFContext) -> None:
        ensure_directory(self.staging_dir)
        if image_format in ("JP2", "JPEG2000"):
            logger.info(f"{source_path} is already jp2; send directly to IIIF staging: {ctx.stage_path}")
            shutil.copyfile(source_path, ctx.stage_path)
            return
        logger.info(f"Compressing {source_path} to {ctx.stage_path}")
        start = time.monotonic()
        try:
            with Image.open(source_path) as img:
                img.seek(0)
                frame = img.convert("RGB") if img.mode not in ("L", "RGB") else img
                frame.save(
                    ctx.stage_path,
                    "JPEG2000",
                    quality_mode="rates",
                    quality_layers=[self.jp2_rate],
                    num_resolutions=7,
                    progression="RPCL",
                )
        except OSError as e:
            raise PublicationError(f"Unable to compress {source_path}: {e}") from e
        size_mb = source_path.stat().st_size / 1000000.0
        logger.info(f"...compression complete; tif size {size_mb:.2f}M, elapsed time {time.monotonic() - start:.2f} seconds")

    def publish(self, master_file: MasterFile, tech_metadata: Optional[TechMetadata], source_path: Path, overwrite: bool) -> None:
        """
        Publish one master file image to IIIF.

        Args:
            master_file: The master file; its PID determines the S3 key
            tech_metadata: Tech metadata used to validate the image format
            source_path: Image bytes to publish
            overwrite: Replace an existing published image

        Raises:
            PublicationError: If the format is unsupported or any S3 step fails
        """
        image_format = (tech_metadata.image_format if tech_metadata else "").upper()
        if image_format not in PUBLISHABLE_FORMATS:
            raise PublicationError(f"Unsupported image format for {master_file.pid}: {image_format or 'unknown'}")

        client = self._require_client()
        ctx = self.context_for(master_file)
        if self.exists(master_file):
            logger.info(f"MasterFile {master_file.pid} already has a JP2k file on S3: {self.bucket}/{ctx.s3_key}")
            if not overwrite:
                logger.info("Overwrite not requested; nothing more to do")
                return
            logger.info("Existing file will be overwritten")

        self._stage(Path(source_path), image_format, ctx)
        try:
            logger.info(f"Uploading {ctx.stage_path} to s3://{self.bucket}/{ctx.s3_key}")
            client.upload_file(str(ctx.stage_path), self.bucket, ctx.s3_key)
        except (BotoCoreError, ClientError) as e:
            raise PublicationError(f"S3 upload of {master_file.pid} failed: {e}") from e
        finally:
            ctx.stage_path.unlink(missing_ok=True)
        logger.info(f"{master_file.pid} has been published to IIIF")

    def unpublish(self, master_file: MasterFile) -> None:
        """
        Remove a master file's published image.

        Raises:
            PublicationError: If the bucket is not configured or the delete fails
        """
        client = self._require_client()
        ctx = self.context_for(master_file)
        logger.info(f"Removing masterfile published to IIIF as {ctx.s3_key}")
        try:
            client.delete_objects(Bucket=self.bucket, Delete={"Objects": [{"Key": ctx.s3_key}]})
        except (BotoCoreError, ClientError) as e:
            raise PublicationError(f"Unable to unpublish {master_file.pid}: {e}") from e
