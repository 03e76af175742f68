"""Request context and compression result models."""
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Optional


class ImageFormat(str, Enum):
    WEBP = "webp"
    JPEG = "jpeg"

    @property
    def mime_type(self) -> str:
        return f"image/{self.value}"

    def alternate(self) -> "ImageFormat":
        return ImageFormat.JPEG if self is ImageFormat.WEBP else ImageFormat.WEBP


class SupportedFormats:
    IMAGE = [ImageFormat.WEBP, ImageFormat.JPEG]


@dataclass(frozen=True)
class RequestContext:
    """Validated per-request parameters. Immutable; the format flip builds a new one."""

    url: str
    format: ImageFormat = ImageFormat.WEBP
    grayscale: bool = False
    quality: int = 80

    def with_alternative_format(self) -> "RequestContext":
        return replace(self, format=self.format.alternate())

    def as_log_dict(self) -> dict:
        data = asdict(self)
        data["format"] = self.format.value
        return data


@dataclass
class CompressedImage:
    """One successful re-encode."""

    data: bytes
    format: ImageFormat
    width: int
    height: int

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class CandidateResult:
    """Best-format candidate: either an image or a marked failure."""

    format: ImageFormat
    image: Optional[CompressedImage] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.image is None


@dataclass
class SizeInfo:
    original: int
    compressed: int

    @property
    def saved(self) -> int:
        return self.original - self.compressed

    @property
    def compressed_percent(self) -> float:
        if self.original <= 0:
            return 100.0
        return self.compressed / self.original * 100

    @property
    def saved_percent(self) -> float:
        return 100 - self.compressed_percent


class DecisionAction(str, Enum):
    SERVE = "serve"
    REDIRECT = "redirect"


@dataclass
class CompressionDecision:
    """Terminal outcome of the decision engine for one request."""

    action: DecisionAction
    context: RequestContext
    image: CompressedImage
    size_info: SizeInfo
    attempts: int = 1
    # best-format mode only: format -> compressed size (or None when it failed)
    sizes: Optional[dict[str, Optional[int]]] = field(default=None)
