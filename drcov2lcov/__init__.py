"""drcov2lcov - convert drcov coverage traces into lcov line coverage"""

from .drcov import (
    read,
    parse,
    DrcovTrace,
    Module,
    Modules,
    BasicBlockRecord,
    DrCovError,
    MalformedHeaderError,
    MalformedModuleLineError,
    TruncatedBasicBlockDataError,
)
from .filters import DrcovFilters, LineInfoFilters, Filter, ReplacementFilter
from .image import ObjectImage, ObjectParseError, open_with_debug_info
from .dwarf import DebugCorrelator, LineRow
from .lines import LineInfo, coalesce_line_info
from .reduce import SetReducer
from .core import LineCoverage

__all__ = [
    "read",
    "parse",
    "DrcovTrace",
    "Module",
    "Modules",
    "BasicBlockRecord",
    "DrCovError",
    "MalformedHeaderError",
    "MalformedModuleLineError",
    "TruncatedBasicBlockDataError",
    "DrcovFilters",
    "LineInfoFilters",
    "Filter",
    "ReplacementFilter",
    "ObjectImage",
    "ObjectParseError",
    "open_with_debug_info",
    "DebugCorrelator",
    "LineRow",
    "LineInfo",
    "coalesce_line_info",
    "SetReducer",
    "LineCoverage",
]
