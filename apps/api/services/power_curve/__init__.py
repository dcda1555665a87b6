"""
Power Curve Module

Performance curves and critical power from per-second sensor series:
- Mean-maximal curves over fixed duration buckets
- CP test effort detection and multi-day protocol assembly
- CP / W' model fitting (two-point and three-point)
- Rolling best-effort records per time window (incremental + backfill)

Design Principles:
- Computation is pure and storage-agnostic
- Storage goes through the store interfaces in `stores`
- Missing samples are dropped, zeros are real readings
"""

from .aggregator import ProfileAggregator
from .cp_detection import CP_PROTOCOLS, Protocol, detect_efforts, find_protocol_sets, get_protocol
from .cp_model import fit_critical_power
from .cp_processing import process_cp_tests
from .mean_maximal import DURATION_BUCKETS, best_window, build_curve, mean_maximal
from .models import (
    ROLLING_WINDOWS,
    ActivitySnapshot,
    BackfillSummary,
    CPProcessingSummary,
    CPResult,
    CurvePoint,
    Effort,
    IncrementalUpdateResult,
    ProfileRecord,
    ProtocolSet,
    SportMetric,
    TaggedActivity,
    TimeWindow,
    WindowBackfillResult,
    metric_for_sport,
)
from .series import coerce_sample, extract_series
from .sql_stores import SqlActivityStore, SqlCPResultStore, SqlProfileStore
from .stores import ActivityStore, CPResultStore, ProfileStore

__all__ = [
    'ProfileAggregator',
    'CP_PROTOCOLS',
    'Protocol',
    'detect_efforts',
    'find_protocol_sets',
    'get_protocol',
    'fit_critical_power',
    'process_cp_tests',
    'DURATION_BUCKETS',
    'best_window',
    'build_curve',
    'mean_maximal',
    'ROLLING_WINDOWS',
    'ActivitySnapshot',
    'BackfillSummary',
    'CPProcessingSummary',
    'CPResult',
    'CurvePoint',
    'Effort',
    'IncrementalUpdateResult',
    'ProfileRecord',
    'ProtocolSet',
    'SportMetric',
    'TaggedActivity',
    'TimeWindow',
    'WindowBackfillResult',
    'metric_for_sport',
    'coerce_sample',
    'extract_series',
    'SqlActivityStore',
    'SqlCPResultStore',
    'SqlProfileStore',
    'ActivityStore',
    'CPResultStore',
    'ProfileStore',
]
