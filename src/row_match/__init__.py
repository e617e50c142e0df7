"""
row_match: bin-based cross-matching of rows between (or within) tables.
"""

from .config import MatchConfig, build_engine
from .engines import (
    NO_MATCH,
    AnisotropicCartesianMatchEngine,
    EqualsMatchEngine,
    ErrorCartesianMatchEngine,
    IsotropicCartesianMatchEngine,
    MatchEngine,
    SkyMatchEngine,
)
from .errors import MatchConfigError, MatchError, MatchResourceError
from .links import LinkSet, LinkSetBuilder, RowLink, RowRef, ScoredPair
from .matcher import MatchPhase, MatchResult, RowMatcher
from .modes import (
    InternalAction,
    JoinType,
    MultiMode,
    PairMode,
    apply_internal_action,
    join_pairs,
    link_frame,
    select_links,
    select_pairs,
)
from .progress import CancelToken, LoggingProgress, NullProgress, TqdmProgress
from .ranges import NdRange, extend_bounds
from .tables import ArrayTable, DataFrameTable

__version__ = "0.1.0"

__all__ = [
    "MatchConfig",
    "build_engine",
    "NO_MATCH",
    "MatchEngine",
    "IsotropicCartesianMatchEngine",
    "AnisotropicCartesianMatchEngine",
    "ErrorCartesianMatchEngine",
    "SkyMatchEngine",
    "EqualsMatchEngine",
    "MatchError",
    "MatchConfigError",
    "MatchResourceError",
    "RowRef",
    "RowLink",
    "ScoredPair",
    "LinkSet",
    "LinkSetBuilder",
    "MatchPhase",
    "MatchResult",
    "RowMatcher",
    "PairMode",
    "JoinType",
    "MultiMode",
    "InternalAction",
    "select_pairs",
    "join_pairs",
    "select_links",
    "link_frame",
    "apply_internal_action",
    "CancelToken",
    "NullProgress",
    "LoggingProgress",
    "TqdmProgress",
    "NdRange",
    "extend_bounds",
    "ArrayTable",
    "DataFrameTable",
    "__version__",
]
