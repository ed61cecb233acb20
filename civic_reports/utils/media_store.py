import io
import logging
import os
import subprocess
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image, ImageOps, UnidentifiedImageError

from civic_reports.models.report import MediaType
from civic_reports.utils.errors import MediaUploadError

logger = logging.getLogger(__name__)

BUCKET = os.getenv("R2_BUCKET") or os.getenv("MEDIA_BUCKET")
FOLDER = os.getenv("MEDIA_FOLDER", "civic-reports")
ACCOUNT_ID = os.getenv("CLOUDFLARE_ACCOUNT_ID")
ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL") or (
    f"https://{ACCOUNT_ID}.r2.cloudflarestorage.com" if ACCOUNT_ID else None
)
PUBLIC_BASE_URL = os.getenv("MEDIA_PUBLIC_BASE_URL")
URL_EXPIRES_IN = int(os.getenv("MEDIA_URL_EXPIRES", str(7 * 24 * 3600)))
TIMEOUT_SECONDS = float(os.getenv("MEDIA_TIMEOUT_SECONDS", "30"))
FFMPEG = os.getenv("FFMPEG_BINARY", "ffmpeg")

THUMBNAIL_SIZE = (200, 200)
VIDEO_THUMBNAIL_WIDTH = 400

SUBFOLDERS = {
    MediaType.image: "images",
    MediaType.video: "videos",
    MediaType.audio: "audio",
}


@dataclass
class MediaFile:
    """An attached file as received from the client."""
    type: MediaType
    filename: str
    content_type: str
    data: bytes


@dataclass
class UploadedMedia:
    type: MediaType
    url: str
    provider_id: str
    thumbnail_url: Optional[str] = None


class MediaStore:
    """
    Gateway to the object store holding report media.

    `upload` either returns an UploadedMedia whose files are all readable,
    or raises MediaUploadError leaving nothing behind. `delete` never raises.
    """

    def upload(self, file: MediaFile, owner_context: str) -> UploadedMedia:
        raise NotImplementedError

    def delete(self, provider_id: str, media_type: MediaType) -> bool:
        raise NotImplementedError

    def delete_many(self, uploaded: List[UploadedMedia]) -> Dict[str, List[str]]:
        results = {"success": [], "failed": []}

        for media in uploaded:
            if self.delete(media.provider_id, media.type):
                results["success"].append(media.provider_id)
            else:
                results["failed"].append(media.provider_id)

        return results


def compress_image(data: bytes, max_width=1400, quality=80):
    img = Image.open(io.BytesIO(data))
    img = ImageOps.exif_transpose(img).convert("RGB")

    # Resize while keeping aspect ratio
    w, h = img.size
    if w > max_width:
        new_height = int(h * (max_width / w))
        img = img.resize((max_width, new_height), Image.LANCZOS)

    # Try WebP first
    buffer = io.BytesIO()

    try:
        img.save(buffer, format="WEBP", quality=quality, method=6)
        ext = "webp"
        mime = "image/webp"
    except (OSError, KeyError) as e:
        logger.warning("WebP encoding failed, falling back to JPEG: %s", e)

        buffer = io.BytesIO()
        img.save(buffer, format="JPEG", quality=quality, optimize=True)
        ext = "jpg"
        mime = "image/jpeg"

    buffer.seek(0)
    return buffer, ext, mime


def make_thumbnail(data: bytes, size=THUMBNAIL_SIZE):
    img = Image.open(io.BytesIO(data))
    img = ImageOps.exif_transpose(img).convert("RGB")

    # centre crop to exactly `size`
    thumb = ImageOps.fit(img, size, Image.LANCZOS)

    buffer = io.BytesIO()
    thumb.save(buffer, format="JPEG", quality=80, optimize=True)
    buffer.seek(0)
    return buffer


def run_ffmpeg(args: List[str]):
    subprocess.run(
        [FFMPEG, "-y", "-loglevel", "error", *args],
        check=True,
        capture_output=True,
        timeout=TIMEOUT_SECONDS * 4,
    )


def transcode_video(data: bytes, content_type: str):
    """Returns (mp4 bytes, jpeg still frame bytes)."""
    with tempfile.TemporaryDirectory() as tmp:
        source = os.path.join(tmp, "source")
        target = os.path.join(tmp, "video.mp4")
        still = os.path.join(tmp, "thumb.jpg")

        with open(source, "wb") as f:
            f.write(data)

        if content_type == "video/mp4":
            target = source
        else:
            run_ffmpeg(["-i", source, "-c:v", "libx264", "-c:a", "aac", "-movflags", "+faststart", target])

        run_ffmpeg(["-ss", "0", "-i", target, "-frames:v", "1", "-vf", f"scale={VIDEO_THUMBNAIL_WIDTH}:-2", still])

        with open(target, "rb") as f:
            video = f.read()
        with open(still, "rb") as f:
            thumbnail = f.read()

    return video, thumbnail


def transcode_audio(data: bytes, content_type: str) -> bytes:
    if content_type == "audio/mpeg":
        return data

    with tempfile.TemporaryDirectory() as tmp:
        source = os.path.join(tmp, "source")
        target = os.path.join(tmp, "audio.mp3")

        with open(source, "wb") as f:
            f.write(data)

        run_ffmpeg(["-i", source, "-vn", "-codec:a", "libmp3lame", "-q:a", "4", target])

        with open(target, "rb") as f:
            return f.read()


def thumbnail_key(key: str) -> str:
    return f"{os.path.splitext(key)[0]}-thumb.jpg"


class S3MediaStore(MediaStore):
    """Stores media in an S3 compatible bucket (Cloudflare R2 by default)."""

    def __init__(self, client=None, bucket: Optional[str] = BUCKET, folder: str = FOLDER):
        self.s3 = client or boto3.client(
            service_name="s3",
            endpoint_url=ENDPOINT_URL,
            aws_access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            aws_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            region_name=os.getenv("AWS_REGION", "auto"),
            config=Config(
                connect_timeout=TIMEOUT_SECONDS,
                read_timeout=TIMEOUT_SECONDS,
                retries={"max_attempts": 1},
            ),
        )
        self.bucket = bucket
        self.folder = folder

    def new_key(self, media_type: MediaType, owner_context: str, ext: str) -> str:
        ts = int(datetime.now(timezone.utc).timestamp() * 1000)
        suffix = uuid.uuid4().hex[:8]
        return f"{self.folder}/{SUBFOLDERS[media_type]}/report-{owner_context}-{ts}-{suffix}.{ext}"

    def url_for(self, key: str) -> str:
        if PUBLIC_BASE_URL:
            return f"{PUBLIC_BASE_URL.rstrip('/')}/{key}"

        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=URL_EXPIRES_IN,
        )

    def put(self, buffer, key: str, mime: str):
        self.s3.upload_fileobj(buffer, self.bucket, key, ExtraArgs={"ContentType": mime})

    def upload(self, file: MediaFile, owner_context: str) -> UploadedMedia:
        try:
            if file.type == MediaType.image:
                buffer, ext, mime = compress_image(file.data)
                thumb = make_thumbnail(file.data)
            elif file.type == MediaType.video:
                video, still = transcode_video(file.data, file.content_type)
                buffer, ext, mime = io.BytesIO(video), "mp4", "video/mp4"
                thumb = io.BytesIO(still)
            else:
                buffer, ext, mime = io.BytesIO(transcode_audio(file.data, file.content_type)), "mp3", "audio/mpeg"
                thumb = None
        except (UnidentifiedImageError, OSError, subprocess.SubprocessError) as e:
            logger.error("Could not process %s '%s': %s", file.type.value, file.filename, e)
            raise MediaUploadError(f"Failed to process {file.type.value} '{file.filename}'") from e

        key = self.new_key(file.type, owner_context, ext)

        try:
            self.put(buffer, key, mime)
        except (BotoCoreError, ClientError) as e:
            logger.error("Upload of %s failed: %s", key, e)
            raise MediaUploadError(f"Failed to upload {file.type.value} '{file.filename}'") from e

        thumbnail_url = None

        try:
            if thumb is not None:
                self.put(thumb, thumbnail_key(key), "image/jpeg")
                thumbnail_url = self.url_for(thumbnail_key(key))

            url = self.url_for(key)
        except (BotoCoreError, ClientError) as e:
            logger.error("Upload of thumbnail for %s failed: %s", key, e)

            # never leave a half-uploaded attachment behind
            self.delete(key, file.type)
            raise MediaUploadError(f"Failed to upload {file.type.value} '{file.filename}'") from e

        return UploadedMedia(
            type=file.type,
            url=url,
            thumbnail_url=thumbnail_url,
            provider_id=key,
        )

    def delete(self, provider_id: str, media_type: MediaType) -> bool:
        keys = [provider_id]
        if media_type in (MediaType.image, MediaType.video):
            keys.append(thumbnail_key(provider_id))

        ok = True
        for key in keys:
            try:
                self.s3.delete_object(Bucket=self.bucket, Key=key)
            except (BotoCoreError, ClientError) as e:
                logger.warning("Error deleting S3 object %s: %s", key, e)
                ok = False

        return ok


_store: Optional[MediaStore] = None


def get_media_store() -> MediaStore:
    global _store

    if _store is None:
        _store = S3MediaStore()

    return _store
