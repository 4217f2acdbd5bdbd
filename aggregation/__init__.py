"""
Aggregation Package.

OHLC candle generation over raw agent metric samples.
"""

from .levels import (
    RAW,
    Resolution,
    ResolutionInfo,
    RESOLUTION_INFO,
    parse_resolution,
    validate_setting,
    resolution_catalogue,
    bucket_start,
    aligned_window,
)
from .candle_aggregator import (
    CandleAggregator,
    AggregationSummary,
    AggregationError,
    AggregationSetting,
    reduce_bucket,
    group_into_buckets,
)


__all__ = [
    # Resolutions
    "RAW",
    "Resolution",
    "ResolutionInfo",
    "RESOLUTION_INFO",
    "parse_resolution",
    "validate_setting",
    "resolution_catalogue",
    "bucket_start",
    "aligned_window",

    # Aggregator
    "CandleAggregator",
    "AggregationSummary",
    "AggregationError",
    "AggregationSetting",
    "reduce_bucket",
    "group_into_buckets",
]
