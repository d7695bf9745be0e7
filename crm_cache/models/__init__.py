from .cache import CacheRecord, MetricRecord, CalculationRecord, CacheMetadata

__all__ = ["CacheRecord", "MetricRecord", "CalculationRecord", "CacheMetadata"]
