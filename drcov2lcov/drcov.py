#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Decoder for DrCov coverage traces.

A trace starts with a text preamble (version, flavor, module table) followed by
a basic block table. Module tables come in the legacy form, which only carries
a count, and in the versioned form (versions 2 through 5), each with its own
module line grammar. The basic block table is normally a packed array of
8-byte records, but the textual dump produced by some tracers is accepted too.

Decoding folds every basic block into a per-module set of executed
module-relative offsets, which is what the debug information correlator
consumes.

References:
 - DrCov format analysis: https://www.ayrx.me/drcov-file-format/
 - DynamoRIO drcov: https://dynamorio.org/page_drcov.html

Example Usage:
    try:
        trace = drcov.read("drcov.app.1234.0000.proc.log")
        for module in trace.modules.table:
            print(module.path, len(module.executed_offsets))
    except drcov.DrCovError as e:
        print(f"Error reading file: {e}")
"""

import dataclasses
import logging
import re
import struct
from typing import Dict, List, Optional, Pattern, Set, Tuple

from .filters import DrcovFilters

LOGGER = logging.getLogger("drcov2lcov")

# --- Constants ---
_BB_ENTRY_SIZE = 8
_BB_ENTRY_FORMAT = "<IHH"
_ASCII_BB_MARKER = b"module id, start, size:"
_COLUMNS_PREFIX = "Columns:"
_LEGACY_MODULE_VERSION = 1
_LATEST_MODULE_VERSION = 5

UNKNOWN_MODULE = "<unknown>"

_VERSION_REGEX = re.compile(r"DRCOV VERSION: (?P<version>\d+)")
_FLAVOR_REGEX = re.compile(r"DRCOV FLAVOR: (?P<flavor>\S+)")
_MODULE_HEADER_LEGACY_REGEX = re.compile(r"Module Table: (?P<count>\d+)")
_MODULE_HEADER_REGEX = re.compile(
    r"Module Table: version (?P<version>\d+), count (?P<count>\d+)"
)
_BB_HEADER_REGEX = re.compile(r"BB Table: (?P<count>\d+) bbs")
_ASCII_BB_REGEX = re.compile(
    r"module\[\s*(?P<id>\d+)\]:\s*0[xX](?P<start>[0-9a-fA-F]+)\s*,\s*(?P<size>\d+)"
)

_FIELD_PATTERNS = {
    "id": r"(?P<id>\d+)",
    "containing_id": r"(?P<containing_id>\d+)",
    "size": r"(?P<size>\d+)",
    "base": r"0[xX](?P<base>[0-9a-fA-F]+)",
    "end": r"0[xX](?P<end>[0-9a-fA-F]+)",
    "entry": r"0[xX](?P<entry>[0-9a-fA-F]+)",
    # drmodtrack prints the offset without a prefix
    "offset": r"(?:0[xX])?(?P<offset>[0-9a-fA-F]+)",
    "preferred_base": r"0[xX](?P<preferred_base>[0-9a-fA-F]+)",
    "checksum": r"0[xX](?P<checksum>[0-9a-fA-F]+)",
    "timestamp": r"0[xX](?P<timestamp>[0-9a-fA-F]+)",
    "path": r"(?P<path>.+?)",
}

_MODULE_LINE_FIELDS = {
    1: ("id", "size", "path"),
    2: ("id", "base", "end", "entry", "path"),
    3: ("id", "containing_id", "base", "end", "entry", "path"),
    4: ("id", "containing_id", "base", "end", "entry", "offset", "path"),
    5: (
        "id",
        "containing_id",
        "base",
        "end",
        "entry",
        "offset",
        "preferred_base",
        "path",
    ),
}


def _compile_module_line(fields: Tuple[str, ...], windows_fields: bool) -> Pattern:
    if windows_fields:
        fields = fields[:-1] + ("checksum", "timestamp", "path")
    body = r"\s*,\s*".join(_FIELD_PATTERNS[name] for name in fields)
    return re.compile(r"^\s*" + body + r"\s*$")


_MODULE_LINE_REGEXES: Dict[Tuple[int, bool], Pattern] = {
    (version, windows_fields): _compile_module_line(fields, windows_fields)
    for version, fields in _MODULE_LINE_FIELDS.items()
    for windows_fields in (False, True)
}


# --- Errors ---


class DrCovError(Exception):
    """Base exception for trace decoding errors."""

    pass


class MalformedHeaderError(DrCovError):
    """A version, flavor, module table or BB table header is missing or invalid."""

    pass


class MalformedModuleLineError(DrCovError):
    """A module line does not match the grammar of the detected version."""

    pass


class TruncatedBasicBlockDataError(DrCovError):
    """The BB table holds fewer records than its header declares."""

    pass


# --- Data model ---


def grammar_version(version: int) -> int:
    """Maps a module table version to the module line grammar that parses it."""
    if 1 <= version < _LATEST_MODULE_VERSION:
        return version
    return _LATEST_MODULE_VERSION


@dataclasses.dataclass
class Module:
    """One entry of a trace's module table."""

    size: int
    path: str
    id: int = 0
    index: int = 0  # position in the module table as written in the trace
    segment_start: int = 0
    segment_offset: int = 0
    containing_index: Optional[int] = None
    executed_offsets: Set[int] = dataclasses.field(default_factory=set, repr=False)

    @classmethod
    def from_line(
        cls, line: str, version: int, index: int = 0, windows_fields: bool = False
    ) -> "Module":
        """Parses a module line with the grammar selected by `version`."""
        grammar = grammar_version(version)
        match = _MODULE_LINE_REGEXES[(grammar, windows_fields)].match(line)
        if match is None:
            raise MalformedModuleLineError(
                f"Module line is invalid (version = {grammar}): {line!r}"
            )

        fields = match.groupdict()
        module = cls(size=0, path=fields["path"], id=int(fields["id"]), index=index)

        if grammar == 1:
            module.size = int(fields["size"])
            return module

        base = int(fields["base"], 16)
        end = int(fields["end"], 16)
        if end < base:
            raise MalformedModuleLineError(
                f"Module end 0x{end:x} lies below its base 0x{base:x}: {line!r}"
            )

        module.segment_start = base
        module.size = end - base
        if fields.get("containing_id") is not None:
            module.containing_index = int(fields["containing_id"])
        if fields.get("offset") is not None:
            module.segment_offset = int(fields["offset"], 16)
        return module

    @property
    def is_unknown(self) -> bool:
        return self.path == UNKNOWN_MODULE

    def mark_executed(self, start: int, size: int) -> bool:
        """
        Folds a basic block into the executed offsets.

        Blocks reaching the module's end are rejected. The inserted range stops
        one byte short of `start + size`, which keeps output identical to the
        historical drcov2lcov tooling.
        """
        if start + size >= self.size:
            return False
        self.executed_offsets.update(range(start, start + size - 1))
        return True

    def executed(self, offset: int) -> bool:
        return offset in self.executed_offsets


@dataclasses.dataclass
class Modules:
    """The decoded module table of one trace."""

    version: int
    table: List[Module]
    count: int = 0  # entries declared by the header, filtered ones included

    def __post_init__(self):
        self._by_index = {module.index: module for module in self.table}
        if self.count < len(self.table):
            self.count = len(self.table)

    def lookup(self, index: int) -> Optional[Module]:
        """Finds a module by its original table index, None if it was filtered out."""
        return self._by_index.get(index)

    def get_coverage_all(self) -> Set[int]:
        """Union of the executed offsets of every module."""
        coverage: Set[int] = set()
        for module in self.table:
            coverage |= module.executed_offsets
        return coverage


@dataclasses.dataclass(frozen=True)
class BasicBlockRecord:
    """A fixed-width BB table record."""

    start: int  # uint32: offset from module base
    size: int  # uint16
    module_id: int  # uint16: index into the module table


@dataclasses.dataclass
class DrcovTrace:
    """A decoded trace file."""

    version: int
    flavor: str
    modules: Modules
    bb_count: int = 0
    path: Optional[str] = None


# --- Parser Implementation ---


class _LineReader:
    """Walks the text preamble line by line, keeping the byte position exact."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def next_line(self) -> Optional[str]:
        """Returns the next non-blank line without its terminator."""
        while self.pos < len(self.data):
            end = self.data.find(b"\n", self.pos)
            if end == -1:
                end = len(self.data)
            raw = self.data[self.pos : end]
            self.pos = end + 1
            if raw.strip():
                return raw.rstrip(b"\r").decode("utf-8", errors="surrogateescape")
        return None

    def remainder(self) -> bytes:
        return self.data[self.pos :]


class _Parser:
    def __init__(self, data: bytes, filters: Optional[DrcovFilters] = None):
        self.reader = _LineReader(data)
        self.filters = filters or DrcovFilters()

    def parse(self) -> DrcovTrace:
        version = self._parse_version()
        flavor = self._parse_flavor()
        modules = self._parse_modules()
        bb_count = self._parse_bb_header()
        self._parse_basic_blocks(bb_count, modules)

        return DrcovTrace(version, flavor, modules, bb_count)

    def _header_line(self, regex: Pattern, what: str) -> "re.Match":
        line = self.reader.next_line()
        if line is None:
            raise MalformedHeaderError(f"{what} line missing")
        match = regex.search(line)
        if match is None:
            raise MalformedHeaderError(
                f"{what} line does not match the expected format: {line!r}"
            )
        return match

    def _parse_version(self) -> int:
        LOGGER.debug("Parsing version number")
        version = int(self._header_line(_VERSION_REGEX, "Version").group("version"))
        LOGGER.debug(f"Version number: {version}")
        return version

    def _parse_flavor(self) -> str:
        flavor = self._header_line(_FLAVOR_REGEX, "Flavor").group("flavor")
        LOGGER.debug(f"Flavor: {flavor}")
        return flavor

    def _parse_module_header(self) -> Tuple[int, int, bool]:
        line = self.reader.next_line()
        if line is None:
            raise MalformedHeaderError("Modules header line missing")

        legacy = _MODULE_HEADER_LEGACY_REGEX.search(line)
        if legacy is not None:
            return _LEGACY_MODULE_VERSION, int(legacy.group("count")), False

        versioned = _MODULE_HEADER_REGEX.search(line)
        if versioned is None:
            raise MalformedHeaderError(
                f"Modules header line does not match the expected format: {line!r}"
            )

        # the column names line always follows the versioned header
        columns_line = self.reader.next_line() or ""
        windows_fields = False
        if columns_line.startswith(_COLUMNS_PREFIX):
            columns = {
                c.strip() for c in columns_line[len(_COLUMNS_PREFIX) :].split(",")
            }
            windows_fields = {"checksum", "timestamp"} <= columns

        return int(versioned.group("version")), int(versioned.group("count")), windows_fields

    def _parse_modules(self) -> Modules:
        LOGGER.debug("Parsing modules")
        version, count, windows_fields = self._parse_module_header()

        table: List[Module] = []
        segment_starts: Dict[int, int] = {}

        for index in range(count):
            line = self.reader.next_line()
            if line is None:
                raise MalformedModuleLineError("Invalid module table (lines missing)")

            line = self.filters.maybe_replace_with_path_map(line)
            if not self.filters.accepts_module(line):
                LOGGER.debug(f"Skipping filtered module line {index}: {line}")
                start = self._segment_start_of_filtered(line, version, windows_fields)
                if start is not None:
                    segment_starts[index] = start
                continue

            module = Module.from_line(line, version, index, windows_fields)
            segment_starts[index] = module.segment_start
            table.append(module)

        if grammar_version(version) == 3:
            self._resolve_segment_offsets(table, segment_starts)

        LOGGER.debug(f"Modules version: {version}, Number of modules: {count}")
        return Modules(version, table, count)

    @staticmethod
    def _segment_start_of_filtered(
        line: str, version: int, windows_fields: bool
    ) -> Optional[int]:
        # a filtered line may still be the container of a kept one
        try:
            return Module.from_line(line, version, 0, windows_fields).segment_start
        except MalformedModuleLineError:
            LOGGER.debug(f"Filtered module line does not parse: {line}")
            return None

    @staticmethod
    def _resolve_segment_offsets(table: List[Module], segment_starts: Dict[int, int]):
        for module in table:
            containing = module.containing_index
            if containing is None or containing == module.index:
                continue
            if containing > module.index:
                raise MalformedModuleLineError(
                    f"Module {module.index} is contained by later module {containing}"
                )
            if containing not in segment_starts:
                LOGGER.debug(
                    f"Containing module {containing} of module {module.index} is unknown"
                )
                continue
            module.segment_offset = module.segment_start - segment_starts[containing]

    def _parse_bb_header(self) -> int:
        match = self._header_line(_BB_HEADER_REGEX, "Basic Block header")
        count = int(match.group("count"))
        LOGGER.debug(f"Number of Basic Blocks: {count}")
        return count

    def _parse_basic_blocks(self, count: int, modules: Modules):
        data = self.reader.remainder()
        if data.startswith(_ASCII_BB_MARKER):
            records = self._ascii_records(data, count)
        else:
            records = self._binary_records(data, count)

        rejected = 0
        for record in records:
            if record.module_id >= modules.count:
                continue
            module = modules.lookup(record.module_id)
            if module is None:
                continue
            if not module.mark_executed(record.start, record.size):
                rejected += 1

        if rejected:
            LOGGER.debug(f"Rejected {rejected} basic blocks reaching their module's end")

    @staticmethod
    def _binary_records(data: bytes, count: int) -> List[BasicBlockRecord]:
        needed = count * _BB_ENTRY_SIZE
        if len(data) < needed:
            raise TruncatedBasicBlockDataError(
                f"Failed to read complete BB table binary data: expected {needed} "
                f"bytes, got {len(data)}"
            )
        return [
            BasicBlockRecord(*fields)
            for fields in struct.iter_unpack(_BB_ENTRY_FORMAT, data[:needed])
        ]

    @staticmethod
    def _ascii_records(data: bytes, count: int) -> List[BasicBlockRecord]:
        records = []
        text = data.decode("utf-8", errors="replace")
        for line in text.splitlines()[1:]:
            match = _ASCII_BB_REGEX.search(line)
            if match is None:
                continue
            records.append(
                BasicBlockRecord(
                    int(match.group("start"), 16),
                    int(match.group("size")),
                    int(match.group("id")),
                )
            )
            if len(records) == count:
                break

        if len(records) < count:
            raise TruncatedBasicBlockDataError(
                f"BB table declares {count} entries, found {len(records)}"
            )
        return records


# --- Public API Functions ---


def parse(data: bytes, filters: Optional[DrcovFilters] = None) -> DrcovTrace:
    """
    Decodes a trace held in memory.

    Args:
        data: The complete trace file contents.
        filters: Module path remapping and include/skip filters applied to
            each module line before it becomes a Module.

    Raises:
        DrCovError: If a header, module line or the BB table is malformed.
    """
    return _Parser(data, filters).parse()


def read(path: str, filters: Optional[DrcovFilters] = None) -> DrcovTrace:
    """
    Reads and decodes a trace file.

    Raises:
        DrCovError: If decoding fails.
        OSError: If the file cannot be read.
    """
    LOGGER.info(f"Loading drcov file: {path}")
    with open(path, "rb") as f:
        data = f.read()

    trace = parse(data, filters)
    trace.path = str(path)
    LOGGER.info("Drcov file loaded")
    return trace
