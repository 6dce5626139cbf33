"""high-level pipeline turning drcov traces into per-line coverage"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Union

from .drcov import DrCovError, DrcovTrace, read
from .dwarf import DebugCorrelator
from .filters import DrcovFilters, LineInfoFilters
from .image import DEFAULT_DEBUG_ROOT
from .lcov import write_lcov
from .lines import LineTable, coalesce_line_info, merge_line_tables
from .reduce import SetReducer

LOGGER = logging.getLogger("drcov2lcov")

PathLike = Union[str, Path]


def load_trace(path: PathLike, filters: Optional[DrcovFilters] = None) -> Optional[DrcovTrace]:
    """decode one trace, logging and returning None when it is unusable"""
    try:
        return read(str(path), filters)
    except (DrCovError, OSError) as e:
        LOGGER.warning(
            f"Could not parse '{path}' as a drcov file. "
            f"Skipping from line coverage analysis. Reason: {e}"
        )
        return None


class LineCoverage:
    """
    accumulates line coverage over many trace files

    each trace is decoded, correlated against the debug information of its
    modules and merged into one line table keyed by source path. merging
    commutes, so traces may be added in any order.
    """

    def __init__(
        self,
        drcov_filters: Optional[DrcovFilters] = None,
        line_filters: Optional[LineInfoFilters] = None,
        debug_root: str = DEFAULT_DEBUG_ROOT,
        reducer: Optional[SetReducer] = None,
    ):
        self.drcov_filters = drcov_filters or DrcovFilters()
        self.correlator = DebugCorrelator(line_filters, debug_root)
        self.reducer = reducer
        self.line_table: LineTable = {}
        self.processed: List[str] = []
        self.skipped: List[str] = []

    def __len__(self) -> int:
        return len(self.line_table)

    def add_trace(self, path: PathLike) -> bool:
        """process one trace file, returns False if it was skipped"""
        trace = load_trace(path, self.drcov_filters)
        if trace is None:
            self.skipped.append(str(path))
            return False

        if self.reducer is not None:
            self.reducer.add(str(path), trace.modules)

        merge_line_tables(self.line_table, self.correlator.gather(trace.modules))
        # keep the table compact between traces
        coalesce_line_info(self.line_table)

        self.processed.append(str(path))
        return True

    def add_traces(self, paths: Iterable[PathLike]) -> int:
        """process several trace files, returns how many were usable"""
        return sum(1 for path in paths if self.add_trace(path))

    def total_lines(self) -> int:
        return sum(len(infos) for infos in self.line_table.values())

    def executed_lines(self) -> int:
        return sum(
            1 for infos in self.line_table.values() for info in infos if info.executed
        )

    def write_lcov(self, path: PathLike):
        coalesce_line_info(self.line_table)
        write_lcov(str(path), self.line_table)
        LOGGER.info(f"Wrote line coverage of {len(self)} source files to {path}")


def reduce_traces(
    paths: Iterable[PathLike], filters: Optional[DrcovFilters] = None
) -> SetReducer:
    """decode-only pass keeping the first trace of each distinct coverage"""
    reducer = SetReducer()
    for path in paths:
        trace = load_trace(path, filters)
        if trace is not None:
            reducer.add(str(path), trace.modules)
    return reducer
