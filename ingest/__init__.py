"""Multi-platform product detail ingestion."""
from .catalog import CatalogWriter, InMemoryCatalogStore, PostgresCatalogStore
from .config import IngestConfig, load_config
from .contract import classify_quality, is_correct, normalize, preserve
from .errors import BlockedError, FetchError, NetworkError, NotFoundError, ScrapeStatus
from .fetcher import Fetcher, FetchResult
from .governor import Admission, ConcurrencyGovernor
from .models import (
    DraftDetail,
    ExternalListing,
    NormalizedDetail,
    Platform,
    PriceTier,
    QualityClass,
    Supplier,
)
from .pipeline import DetailPipeline
from .service import ScrapeResult, ScrapeService

__all__ = [
    "Admission",
    "BlockedError",
    "CatalogWriter",
    "ConcurrencyGovernor",
    "DetailPipeline",
    "DraftDetail",
    "ExternalListing",
    "FetchError",
    "FetchResult",
    "Fetcher",
    "InMemoryCatalogStore",
    "IngestConfig",
    "NetworkError",
    "NormalizedDetail",
    "NotFoundError",
    "Platform",
    "PostgresCatalogStore",
    "PriceTier",
    "QualityClass",
    "ScrapeResult",
    "ScrapeService",
    "ScrapeStatus",
    "Supplier",
    "classify_quality",
    "is_correct",
    "load_config",
    "normalize",
    "preserve",
]
