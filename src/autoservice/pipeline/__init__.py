"""Document pipeline: image normalization, OCR, caching, retry and structured extraction."""

from .extraction import ExtractionResult, StructuredExtractor, reconcile
from .image import ImageNormalizer, to_data_uri
from .ocr import MistralOcr, OcrService, TesseractOcr, build_ocr_service
from .ocr_cache import OcrCache, content_hash
from .retry import RetryPolicy, classify_error, with_retry

__all__ = [
    "ExtractionResult",
    "StructuredExtractor",
    "reconcile",
    "ImageNormalizer",
    "to_data_uri",
    "MistralOcr",
    "OcrService",
    "TesseractOcr",
    "build_ocr_service",
    "OcrCache",
    "content_hash",
    "RetryPolicy",
    "classify_error",
    "with_retry",
]
