"""Image cache and bad-image detection."""
from .cache import ImageAsset, ImageCache, ImageSelection, content_hash_of
from .detector import BadImageDetector, Inspection, sniff_extension
from .registry import KNOWN_PLACEHOLDER_HASHES, BadHashRegistry, ImageManifest
from .store import LocalImageStore, SupabaseImageMirror
from .urls import is_likely_bad_image_url, normalize_image_url, rejection_reason, score_image_url

__all__ = [
    "BadHashRegistry",
    "BadImageDetector",
    "ImageAsset",
    "ImageCache",
    "ImageManifest",
    "ImageSelection",
    "Inspection",
    "KNOWN_PLACEHOLDER_HASHES",
    "LocalImageStore",
    "SupabaseImageMirror",
    "content_hash_of",
    "is_likely_bad_image_url",
    "normalize_image_url",
    "rejection_reason",
    "score_image_url",
    "sniff_extension",
]
