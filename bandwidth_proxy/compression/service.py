"""Compression decision engine: encode, compare sizes, fall back or give up."""
import asyncio
import json
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from bandwidth_proxy.config import (
    CODEC_CONCURRENCY,
    ENABLE_ALTERNATIVE_FORMAT,
    USE_BEST_COMPRESSION_FORMAT,
)
from bandwidth_proxy.compression.codec import CodecError, encode_image
from bandwidth_proxy.compression.models import (
    CandidateResult,
    CompressedImage,
    CompressionDecision,
    DecisionAction,
    ImageFormat,
    RequestContext,
    SizeInfo,
    SupportedFormats,
)

logger = logging.getLogger("proxy.service")

Encoder = Callable[[bytes, ImageFormat, int, bool], CompressedImage]


def convert_file_size(size: float, decimal_places: int = 2) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    index = 0
    while size >= 1024 and index < len(units) - 1:
        size /= 1024
        index += 1
    return f"{size:.{decimal_places}f} {units[index]}"


def describe_sizes(size_info: SizeInfo, sizes: Optional[dict] = None) -> dict:
    """Human-readable size summary used in every log record."""
    saved = size_info.saved
    body = {
        "originalSize": convert_file_size(size_info.original),
        "compressedSize": f"{convert_file_size(size_info.compressed)} ( {size_info.compressed_percent:.2f} % )",
        "savedSize": f"{'-' if saved < 0 else ''}{convert_file_size(abs(saved))} ( {size_info.saved_percent:.2f} % )",
    }
    if sizes is not None:
        body = {
            "sizes": {
                fmt: convert_file_size(size) if isinstance(size, int) else size
                for fmt, size in sizes.items()
            },
            **body,
        }
    return body


def format_record(record: dict) -> str:
    return "\n" + json.dumps(record, indent=2, default=str)


class CompressionService:
    """Runs the encoder off the event loop and decides what to send back."""

    def __init__(
        self,
        best_format: bool = USE_BEST_COMPRESSION_FORMAT,
        alternative_format: bool = ENABLE_ALTERNATIVE_FORMAT,
        concurrency: int = CODEC_CONCURRENCY,
        encoder: Encoder = encode_image,
    ):
        self.best_format = best_format
        self.alternative_format = alternative_format
        self._encoder = encoder
        max_workers = concurrency if concurrency and concurrency > 0 else (os.cpu_count() or 1)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="codec")
        logger.info(
            "CompressionService initialized with max_workers=%s best_format=%s alternative_format=%s",
            max_workers, best_format, alternative_format,
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    async def _encode(self, data: bytes, fmt: ImageFormat, context: RequestContext) -> CompressedImage:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, self._encoder, data, fmt, context.quality, context.grayscale
        )

    async def compress(self, data: bytes, context: RequestContext) -> CompressedImage:
        """Single-format mode: encode with the context's own format."""
        return await self._encode(data, context.format, context)

    async def compress_to_best_format(
        self, data: bytes, context: RequestContext
    ) -> tuple[CompressedImage, dict[str, Optional[int]]]:
        """Best-format mode: encode every supported format and keep the smallest success."""

        async def attempt(fmt: ImageFormat) -> CandidateResult:
            try:
                return CandidateResult(format=fmt, image=await self._encode(data, fmt, context))
            except CodecError as e:
                return CandidateResult(format=fmt, error=str(e))

        candidates = await asyncio.gather(*(attempt(fmt) for fmt in SupportedFormats.IMAGE))
        sizes = {c.format.value: (None if c.failed else c.image.size) for c in candidates}
        succeeded = [c.image for c in candidates if not c.failed]
        if not succeeded:
            reasons = "; ".join(f"{c.format.value}: {c.error}" for c in candidates)
            raise CodecError(f"All candidate formats failed ({reasons})")
        return min(succeeded, key=lambda image: image.size), sizes

    async def decide(self, original: bytes, context: RequestContext) -> CompressionDecision:
        """
        Compress `original` and decide between serving it and redirecting.

        At most two attempts are made: the requested format and, when the
        alternative-format fallback is enabled in single-format mode, its
        opposite. A tie counts as no saving.
        """
        attempts = [context]
        if self.alternative_format and not self.best_format:
            attempts.append(context.with_alternative_format())

        decision = None
        for number, attempt in enumerate(attempts, start=1):
            sizes = None
            if self.best_format:
                image, sizes = await self.compress_to_best_format(original, attempt)
            else:
                image = await self.compress(original, attempt)
            size_info = SizeInfo(original=len(original), compressed=image.size)

            if size_info.saved > 0:
                return CompressionDecision(
                    action=DecisionAction.SERVE,
                    context=attempt,
                    image=image,
                    size_info=size_info,
                    attempts=number,
                    sizes=sizes,
                )

            decision = CompressionDecision(
                action=DecisionAction.REDIRECT,
                context=attempt,
                image=image,
                size_info=size_info,
                attempts=number,
                sizes=sizes,
            )
            if number < len(attempts):
                logger.info(format_record({
                    "worker": os.getpid(),
                    "params": attempt.as_log_dict(),
                    "body": {
                        **describe_sizes(size_info, sizes),
                        "error": "Cannot compress!",
                        "reason": "No size reduction, trying alternative format",
                    },
                }))
        return decision
