"""Remote media persistence and best-effort optimization.

Images are re-encoded to WebP with Pillow, audio to OGG/Opus with ffmpeg.
Optimization never fails the caller: on any error the original file stays.
"""

import asyncio
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
from PIL import Image, ImageOps

from omnichat.config import settings
from omnichat.logging_config import get_logger
from omnichat.services.result import Result

logger = get_logger("media_service")

MAX_MEDIA_BYTES = 25 * 1024 * 1024
PROBE_TIMEOUT_SECONDS = 5.0
DOWNLOAD_TIMEOUT_SECONDS = 30.0
ALLOWED_MIMES = {
    "image": {"image/jpeg", "image/png", "image/gif", "image/webp"},
    "audio": {"audio/ogg", "audio/mpeg", "audio/mp4", "audio/wav", "audio/x-m4a", "application/octet-stream"},
}
DEFAULT_EXTENSIONS = {"image": ".jpg", "audio": ".ogg"}

IMAGE_MAX_WIDTH = 1600
IMAGE_QUALITY = 82


@dataclass
class OptimizedMedia:
    path: str
    filename: str


def _safe_token(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "", value) or "media"


def is_remote(ref: str) -> bool:
    return ref.startswith(("http://", "https://"))


def resolve_media_path(ref: str, storage_dir: Optional[str] = None) -> Path:
    """Map an ``uploads/<file>`` reference onto the local media directory."""
    root = Path(storage_dir or settings.media_storage_dir)
    relative = ref.lstrip("/")
    if relative.startswith("uploads/"):
        relative = relative[len("uploads/") :]
    return root / relative


def public_media_url(ref: str) -> str:
    if is_remote(ref):
        return ref
    return f"{settings.public_base_url.rstrip('/')}/{ref.lstrip('/')}"


class MediaOptimizer:
    def __init__(self, ffmpeg_binary: str = "ffmpeg"):
        self.ffmpeg_binary = ffmpeg_binary

    async def optimize(self, file_path: str, kind: str) -> OptimizedMedia:
        try:
            if kind == "image":
                return await asyncio.to_thread(self._optimize_image, file_path)
            if kind == "audio":
                return await self._optimize_audio(file_path)
        except Exception as e:
            logger.warning(
                "Media optimization failed, keeping original",
                extra={"context": {"path": file_path, "kind": kind, "error": str(e)}},
            )
        return OptimizedMedia(path=file_path, filename=os.path.basename(file_path))

    def _optimize_image(self, file_path: str) -> OptimizedMedia:
        source = Path(file_path)
        target = source.with_name(f"{source.stem}_opt.webp")
        original_size = source.stat().st_size

        with Image.open(source) as img:
            img = ImageOps.exif_transpose(img)
            if img.width > IMAGE_MAX_WIDTH:
                height = round(img.height * IMAGE_MAX_WIDTH / img.width)
                img = img.resize((IMAGE_MAX_WIDTH, height))
            if img.mode not in ("RGB", "RGBA"):
                img = img.convert("RGBA" if "transparency" in img.info else "RGB")
            img.save(target, format="WEBP", quality=IMAGE_QUALITY, method=4)

        optimized_size = target.stat().st_size
        if optimized_size >= original_size:
            target.unlink(missing_ok=True)
            return OptimizedMedia(path=str(source), filename=source.name)

        final = source.with_suffix(".webp")
        source.unlink()
        target.rename(final)
        logger.info(
            "Image optimized",
            extra={"context": {"file": final.name, "original_kb": original_size // 1024, "kb": optimized_size // 1024}},
        )
        return OptimizedMedia(path=str(final), filename=final.name)

    async def _optimize_audio(self, file_path: str) -> OptimizedMedia:
        source = Path(file_path)
        target = source.with_name(f"{source.stem}_opt.ogg")
        process = await asyncio.create_subprocess_exec(
            self.ffmpeg_binary,
            "-y",
            "-i",
            str(source),
            "-vn",
            "-map_metadata",
            "-1",
            "-c:a",
            "libopus",
            "-ac",
            "1",
            "-ar",
            "16000",
            "-b:a",
            "24k",
            "-application",
            "voip",
            str(target),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        returncode = await process.wait()
        if returncode != 0 or not target.exists() or target.stat().st_size == 0:
            target.unlink(missing_ok=True)
            raise RuntimeError(f"ffmpeg exited with {returncode}")

        final = source.with_suffix(".ogg")
        source.unlink()
        target.rename(final)
        return OptimizedMedia(path=str(final), filename=final.name)


def parse_content_length(raw: Optional[str]) -> int:
    """Header value in bytes; 0 when missing or malformed."""
    try:
        return max(int((raw or "0").strip()), 0)
    except ValueError:
        logger.warning(f"Ignoring malformed Content-Length: {raw!r}")
        return 0


async def probe_remote_media(url: str, kind: str) -> Optional[str]:
    """HEAD the URL and return a rejection reason, or None when it may be downloaded.

    A probe that cannot be completed does not block the download; the streamed
    byte cap still applies.
    """
    try:
        async with httpx.AsyncClient(timeout=PROBE_TIMEOUT_SECONDS, follow_redirects=True) as client:
            response = await client.head(url)
    except httpx.HTTPError as e:
        logger.warning(f"Media probe failed, proceeding: {e}")
        return None

    content_length = parse_content_length(response.headers.get("content-length"))
    content_type = (response.headers.get("content-type") or "").split(";")[0].strip().lower()

    if content_length > MAX_MEDIA_BYTES:
        return "too_large"
    if content_type and content_type not in ALLOWED_MIMES.get(kind, set()):
        return "invalid_mime"
    return None


async def download_to_file(url: str, target_path: Path, max_bytes: int = MAX_MEDIA_BYTES) -> Result[str]:
    """Stream ``url`` to ``target_path`` and abort once ``max_bytes`` is exceeded."""
    size_bytes = 0
    try:
        target_path.parent.mkdir(parents=True, exist_ok=True)
        async with httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT_SECONDS, follow_redirects=True) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                with target_path.open("wb") as handle:
                    async for chunk in response.aiter_bytes():
                        if not chunk:
                            continue
                        size_bytes += len(chunk)
                        if size_bytes > max_bytes:
                            handle.close()
                            target_path.unlink(missing_ok=True)
                            return Result.failure("download exceeded size cap", "too_large")
                        handle.write(chunk)
    except (httpx.HTTPError, OSError) as e:
        if target_path.is_file():
            target_path.unlink()
        return Result.from_exception(e, "download_failed")

    return Result.success(str(target_path))


class MediaService:
    def __init__(self, optimizer: Optional[MediaOptimizer] = None, storage_dir: Optional[str] = None):
        self.optimizer = optimizer or MediaOptimizer()
        self.storage_dir = Path(storage_dir or settings.media_storage_dir)

    def build_path(self, prefix: str, kind: str) -> Path:
        ext = DEFAULT_EXTENSIONS.get(kind, ".bin")
        filename = f"persist_{_safe_token(prefix)}_{int(time.time() * 1000)}{ext}"
        return self.storage_dir / filename

    async def persist_remote_media(self, url: str, kind: str, prefix: str) -> Result[str]:
        """Download a hosted media URL into local storage.

        Returns the ``uploads/<filename>`` reference of the optimized file.
        """
        if kind not in ALLOWED_MIMES:
            return Result.failure(f"unsupported media kind {kind}", "unsupported_kind")

        reason = await probe_remote_media(url, kind)
        if reason:
            logger.warning(
                "Remote media rejected",
                extra={"context": {"kind": kind, "reason": reason}},
            )
            return Result.failure(f"media rejected: {reason}", reason)

        downloaded = await download_to_file(url, self.build_path(prefix, kind))
        if not downloaded.ok:
            logger.warning(
                "Remote media download failed",
                extra={"context": {"kind": kind, "error": downloaded.error}},
            )
            return downloaded

        optimized = await self.optimizer.optimize(downloaded.value, kind)
        return Result.success(f"uploads/{optimized.filename}")
