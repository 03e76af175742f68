"""Pillow encoder: re-encode raw image bytes as WebP or JPEG."""
import io
import logging

from PIL import Image, ImageOps, features

from bandwidth_proxy.compression.models import CompressedImage, ImageFormat

logger = logging.getLogger("proxy.codec")

JPEG_BACKGROUND = (255, 255, 255)


class CodecError(Exception):
    """Raised when Pillow cannot decode or encode an image."""


def configure_codec(cache: bool = True, simd: bool = True) -> None:
    """Apply worker-wide codec toggles once at worker startup."""
    if not cache:
        # Pillow reuses freed memory blocks by default; 0 disables the pool
        Image.core.set_blocks_max(0)
    turbo = features.check_feature("libjpeg_turbo")
    if not simd and turbo:
        logger.warning("CODEC_SIMD=false has no effect: Pillow selects SIMD paths at build time")
    logger.info("Codec configured: cache=%s simd=%s libjpeg_turbo=%s", cache, simd, turbo)


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def _to_grayscale(img: Image.Image) -> Image.Image:
    if _has_alpha(img):
        rgba = img.convert("RGBA")
        return Image.merge("LA", (ImageOps.grayscale(rgba.convert("RGB")), rgba.getchannel("A")))
    return ImageOps.grayscale(img.convert("RGB"))


def _prepare_jpeg(img: Image.Image) -> Image.Image:
    if _has_alpha(img):
        gray = img.mode == "LA"
        rgba = img.convert("RGBA")
        bg = Image.new("RGB", rgba.size, JPEG_BACKGROUND)
        bg.paste(rgba, mask=rgba.getchannel("A"))
        return bg.convert("L") if gray else bg
    if img.mode in ("L", "RGB"):
        return img
    return img.convert("RGB")


def _prepare_webp(img: Image.Image) -> Image.Image:
    if img.mode in ("RGB", "RGBA"):
        return img
    return img.convert("RGBA" if _has_alpha(img) else "RGB")


def encode_image(data: bytes, fmt: ImageFormat, quality: int, grayscale: bool = False) -> CompressedImage:
    """
    Decode `data` and re-encode its first frame.
    Raises CodecError for anything Pillow rejects.
    """
    quality = max(0, min(100, int(quality)))
    try:
        with Image.open(io.BytesIO(data)) as src:
            src.seek(0)
            img = src.convert("RGBA") if src.mode == "P" and _has_alpha(src) else src.copy()
        if grayscale:
            img = _to_grayscale(img)
        buf = io.BytesIO()
        if fmt is ImageFormat.JPEG:
            out = _prepare_jpeg(img)
            out.save(buf, format="JPEG", quality=quality, optimize=True)
        else:
            out = _prepare_webp(img)
            out.save(buf, format="WEBP", quality=quality, method=4)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise CodecError(str(e)) from e
    return CompressedImage(data=buf.getvalue(), format=fmt, width=out.width, height=out.height)
