"""
Correlation of DWARF line tables with executed basic blocks.

Every row of every line-number program maps an instruction address to a
source line. The address is turned into a module-relative offset by removing
the image's load bias and the segment offset recorded in the trace; the line
is marked executed when that offset belongs to an executed basic block.
"""

import logging
import os
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from .drcov import Module, Modules
from .filters import LineInfoFilters
from .image import DEFAULT_DEBUG_ROOT, open_with_debug_info
from .lines import LineInfo, LineTable

LOGGER = logging.getLogger("drcov2lcov")

_U32_MAX = 0xFFFFFFFF


@dataclass(frozen=True)
class LineRow:
    """one row of a line-number program"""

    path: Optional[str]
    line: int
    address: int


@dataclass
class ModuleRows:
    """line rows of a module together with the load bias of their image"""

    load_bias: int
    rows: List[LineRow]


def _decode(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return os.fsdecode(value)
    return str(value)


def _comp_dir(cu) -> Optional[str]:
    attribute = cu.get_top_DIE().attributes.get("DW_AT_comp_dir")
    return _decode(attribute.value) if attribute is not None else None


class _FileResolver:
    """resolves line program file indexes to paths, memoized per program"""

    def __init__(self, lineprog, comp_dir: Optional[str]):
        self.lineprog = lineprog
        self.comp_dir = comp_dir
        self.version = lineprog.header["version"]
        self._cache: Dict[int, Optional[str]] = {}

    def path(self, index: int) -> Optional[str]:
        if index not in self._cache:
            self._cache[index] = self._resolve(index)
        return self._cache[index]

    def _directory(self, dir_index: int) -> Optional[str]:
        directories = self.lineprog.header["include_directory"]
        if self.version >= 5:
            position = dir_index
        elif dir_index == 0:
            return self.comp_dir
        else:
            position = dir_index - 1

        if 0 <= position < len(directories):
            return _decode(directories[position])
        return None

    def _resolve(self, index: int) -> Optional[str]:
        entries = self.lineprog.header["file_entry"]
        # file indexes are 1-based before DWARF 5
        position = index if self.version >= 5 else index - 1
        if not 0 <= position < len(entries):
            return None

        entry = entries[position]
        name = _decode(entry.name)
        if not name:
            return None

        directory = None
        if entry.dir_index is not None:
            directory = self._directory(entry.dir_index)
        # relative include directories are anchored at comp_dir; historical
        # drcov2lcov output kept them relative, so SF paths can differ there
        if directory and not os.path.isabs(directory) and self.comp_dir:
            directory = os.path.join(self.comp_dir, directory)

        return os.path.join(directory, name) if directory else name


def iter_line_rows(dwarf_info) -> Iterator[LineRow]:
    """yield the rows of every compilation unit's line program"""
    for cu in dwarf_info.iter_CUs():
        lineprog = dwarf_info.line_program_for_CU(cu)
        if lineprog is None:
            continue

        files = _FileResolver(lineprog, _comp_dir(cu))
        for entry in lineprog.get_entries():
            state = entry.state
            # end_sequence rows mark the first address past a sequence
            if state is None or state.end_sequence or not state.line:
                continue
            yield LineRow(files.path(state.file), state.line, state.address)


class DebugCorrelator:
    """
    maps the executed offsets of decoded modules onto source lines

    line rows are read once per module path and reused for every trace that
    loads the same module.
    """

    def __init__(
        self,
        filters: Optional[LineInfoFilters] = None,
        debug_root: str = DEFAULT_DEBUG_ROOT,
    ):
        self.filters = filters or LineInfoFilters()
        self.debug_root = debug_root
        self._rows_cache: Dict[str, Optional[ModuleRows]] = {}

    def gather(self, modules: Modules) -> LineTable:
        """collect line records for every module of one trace"""
        line_table: LineTable = {}

        for module in modules.table:
            if module.is_unknown:
                continue

            LOGGER.info(f"Gathering debug information about module {module.path}")
            module_rows = self.module_rows(module.path)
            if module_rows is None:
                continue

            self.correlate(module, module_rows, line_table)
            LOGGER.info(f"Gathered debug information about module {module.path}")

        return line_table

    def module_rows(self, path: str) -> Optional[ModuleRows]:
        """line rows of the image at path, None when it has no usable debug info"""
        if path not in self._rows_cache:
            self._rows_cache[path] = self._load_rows(path)
        return self._rows_cache[path]

    def _load_rows(self, path: str) -> Optional[ModuleRows]:
        try:
            image = open_with_debug_info(path, self.debug_root)
        except Exception as e:
            # corrupt objects surface as arbitrary pyelftools exceptions
            LOGGER.error(
                f"An error occurred while trying to determine whether {path} "
                f"has debug info. Info: {e}"
            )
            return None

        if image is None:
            LOGGER.warning(f"Could not find debug info for {path}")
            return None

        with image:
            try:
                return ModuleRows(image.load_bias, list(image.line_rows()))
            except Exception as e:
                # e.g. ZeroDivisionError for a line program with line_range 0
                LOGGER.error(
                    f"An error occurred while gathering debug info for {path}. Info: {e}"
                )
                return None

    def correlate(self, module: Module, module_rows: ModuleRows, line_table: LineTable):
        """append a LineInfo to line_table for each in-range row of module"""
        accepted: Dict[Optional[str], bool] = {}
        discarded = 0

        for row in module_rows.rows:
            if row.path not in accepted:
                accepted[row.path] = self.filters.accepts_source(row.path)
            if not accepted[row.path]:
                continue

            offset = row.address - module_rows.load_bias - module.segment_offset
            if offset < 0 or offset > _U32_MAX or offset >= module.size:
                discarded += 1
                continue

            line_table.setdefault(row.path, []).append(
                LineInfo(row.line, module.executed(offset))
            )

        if discarded:
            LOGGER.debug(
                f"Discarded {discarded} line rows outside of module {module.path}"
            )
