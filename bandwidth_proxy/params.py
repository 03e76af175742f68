"""Query-string parsing into a RequestContext."""
import re
from typing import Optional
from urllib.parse import parse_qsl

from bandwidth_proxy.config import DEFAULT_QUALITY
from bandwidth_proxy.compression.models import ImageFormat, RequestContext

ALLOWED_QUERY_PARAMETERS = ("url", "jpg", "bw", "l")

# Double-proxied requests from the legacy bandwidth mirror: http://1.1.X.X/bmi/[http(s)://]
LEGACY_PROXY_PREFIX = re.compile(r"http://1\.1\.\d\.\d/bmi/(https?://)?", re.IGNORECASE)

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def parse_quality(raw: Optional[str], default: int = DEFAULT_QUALITY) -> int:
    """Leading-integer parse clamped to 0-100; anything unparsable is the default."""
    match = _LEADING_INT.match(raw or "")
    if not match:
        return default
    return max(0, min(100, int(match.group(1))))


def rewrite_legacy_url(url: str) -> str:
    return LEGACY_PROXY_PREFIX.sub("http://", url, count=1)


def parse_request_parameters(query_string: str) -> Optional[RequestContext]:
    """
    Build a RequestContext from a raw query string.
    Returns None when no url is present (identify request).
    Unknown parameters are appended to the target url in encounter order.
    """
    recognized: dict[str, str] = {}
    extra = ""
    for key, value in parse_qsl(query_string or "", keep_blank_values=True):
        if key in ALLOWED_QUERY_PARAMETERS:
            recognized[key] = value
        else:
            extra += f"&{key}={value}" if value else f"&{key}"

    url = recognized.get("url")
    if not url:
        return None
    url += extra

    return RequestContext(
        url=rewrite_legacy_url(url),
        format=ImageFormat.JPEG if recognized.get("jpg") == "1" else ImageFormat.WEBP,
        grayscale=recognized.get("bw") == "1",
        quality=parse_quality(recognized.get("l")),
    )
