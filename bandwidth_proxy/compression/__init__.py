from .service import CompressionService
from .models import CompressionDecision, ImageFormat, RequestContext, SupportedFormats

__all__ = ["CompressionService", "CompressionDecision", "ImageFormat", "RequestContext", "SupportedFormats"]
