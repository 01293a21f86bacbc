"""
Models package — export all SQLAlchemy models.
"""

from src.models.base import Base
from src.models.canonical_card import CanonicalCard, CardPrinting
from src.models.ingest_run import IngestRun
from src.models.price_snapshot import PriceHistoryPoint, PriceSnapshot
from src.models.provider_audit import ProviderIngest, ProviderRawPayload
from src.models.provider_set_map import ProviderSetMap
from src.models.variant_metrics import PROVIDER_METRIC_COLUMNS, VariantMetrics

__all__ = [
    "Base",
    "CanonicalCard",
    "CardPrinting",
    "IngestRun",
    "PriceHistoryPoint",
    "PriceSnapshot",
    "ProviderIngest",
    "ProviderRawPayload",
    "ProviderSetMap",
    "PROVIDER_METRIC_COLUMNS",
    "VariantMetrics",
]
