"""
Object image handles and separate debug file discovery.

An ObjectImage owns a read-only memory mapping of a module on disk together
with the pyelftools view parsed from it; every section, segment and DWARF
structure read through the image borrows from that mapping, so the image must
stay open until those reads are done.

Debug information is located the way gdb does it
(https://sourceware.org/gdb/onlinedocs/gdb/Separate-Debug-Files.html): a
`.gnu_debuglink` section names an external file which is searched for next to
the binary, in its `.debug` directory and below the global debug root. The
file that is found may itself carry a debug link, so resolution walks an
explicit stack of open images until one has line tables of its own.
"""

import dataclasses
import logging
import mmap
import os
from typing import Iterator, List, Optional, Set

from elftools.elf.elffile import ELFFile
from elftools.elf.sections import NoteSection

LOGGER = logging.getLogger("drcov2lcov")

DEFAULT_DEBUG_ROOT = "/usr/lib/debug"

_DEBUG_LINK_SECTION = ".gnu_debuglink"
_DEBUG_INFO_SECTIONS = (".debug_info", ".zdebug_info")
_DEBUG_LINE_SECTIONS = (".debug_line", ".zdebug_line")


class ObjectParseError(Exception):
    """A module image cannot be opened or parsed as a native object."""

    pass


@dataclasses.dataclass(frozen=True)
class DebugLink:
    """Contents of a `.gnu_debuglink` section."""

    name: str
    crc: Optional[int] = None


class ObjectImage:
    """Owning handle over a memory-mapped ELF image."""

    def __init__(self, path: str, mapping: mmap.mmap, elf: ELFFile):
        self.path = path
        self._mapping = mapping
        self._elf = elf

    @classmethod
    def open(cls, path: str) -> "ObjectImage":
        """
        Maps `path` read-only and parses it as an ELF object.

        Raises:
            ObjectParseError: If the file cannot be mapped or is not ELF.
        """
        try:
            with open(path, "rb") as f:
                mapping = mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ)
        except (OSError, ValueError) as e:
            raise ObjectParseError(f"Could not map {path}: {e}")

        try:
            elf = ELFFile(mapping)
        except Exception as e:
            # truncated headers raise more than ELFError
            mapping.close()
            raise ObjectParseError(f"Could not parse {path} as an ELF object: {e}")

        return cls(path, mapping, elf)

    def close(self):
        if self._mapping is not None:
            self._elf = None
            self._mapping.close()
            self._mapping = None

    def __enter__(self) -> "ObjectImage":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    @property
    def elf(self) -> ELFFile:
        if self._elf is None:
            raise ValueError(f"Object image {self.path} is closed")
        return self._elf

    @property
    def load_bias(self) -> int:
        """Virtual address minus file offset of the lowest PT_LOAD segment."""
        loadable = [
            segment
            for segment in self.elf.iter_segments()
            if segment["p_type"] == "PT_LOAD"
        ]
        if not loadable:
            return 0
        lowest = min(loadable, key=lambda segment: segment["p_vaddr"])
        return lowest["p_vaddr"] - lowest["p_offset"]

    def has_debug_info(self) -> bool:
        """True when the image carries both DWARF unit and line tables."""
        return any(
            self.elf.get_section_by_name(name) is not None
            for name in _DEBUG_INFO_SECTIONS
        ) and any(
            self.elf.get_section_by_name(name) is not None
            for name in _DEBUG_LINE_SECTIONS
        )

    def debug_link(self) -> Optional[DebugLink]:
        section = self.elf.get_section_by_name(_DEBUG_LINK_SECTION)
        if section is None:
            return None

        data = section.data()
        name = data.split(b"\0", 1)[0]
        if not name:
            return None

        # the file name is NUL terminated and padded to 4 bytes, then the CRC32
        crc_pos = (len(name) + 4) & ~3
        crc = None
        if len(data) >= crc_pos + 4:
            byteorder = "little" if self.elf.little_endian else "big"
            crc = int.from_bytes(data[crc_pos : crc_pos + 4], byteorder)
        return DebugLink(os.fsdecode(name), crc)

    def build_id(self) -> Optional[str]:
        """The GNU build-id as a lowercase hex string."""
        for section in self.elf.iter_sections():
            if not isinstance(section, NoteSection):
                continue
            for note in section.iter_notes():
                if note["n_type"] == "NT_GNU_BUILD_ID":
                    return note["n_desc"]
        return None

    def line_rows(self) -> Iterator["LineRow"]:
        """Rows of every line-number program in the image's DWARF data."""
        from .dwarf import iter_line_rows

        return iter_line_rows(self.elf.get_dwarf_info())


def debug_link_candidates(
    object_path: str,
    link_name: str,
    build_id: Optional[str] = None,
    debug_root: str = DEFAULT_DEBUG_ROOT,
) -> List[str]:
    """
    Paths that may hold the file named by a debug link, in search order.

    The sibling candidate `<dir>/<link>` only counts when it is not the
    object itself; find_debug_link_target checks that.
    """
    mod_dir = os.path.dirname(os.path.abspath(object_path))
    candidates = []

    if os.path.isabs(link_name):
        candidates.append(link_name)

    if build_id and len(build_id) > 2:
        candidates.append(
            os.path.join(debug_root, ".build-id", build_id[:2], build_id[2:], link_name)
        )

    candidates.append(os.path.join(mod_dir, link_name))
    candidates.append(os.path.join(mod_dir, ".debug", link_name))
    candidates.append(os.path.join(debug_root, mod_dir.lstrip(os.sep), link_name))
    return candidates


def _same_file(a: str, b: str) -> bool:
    try:
        return os.path.samefile(a, b)
    except OSError:
        return False


def find_debug_link_target(
    object_path: str,
    link_name: str,
    build_id: Optional[str] = None,
    debug_root: str = DEFAULT_DEBUG_ROOT,
) -> Optional[str]:
    """The first existing debug link candidate, None if there is none."""
    sibling = os.path.join(os.path.dirname(os.path.abspath(object_path)), link_name)

    for candidate in debug_link_candidates(object_path, link_name, build_id, debug_root):
        if not os.path.isfile(candidate):
            continue
        if candidate == sibling and _same_file(candidate, object_path):
            continue
        return candidate

    return None


def open_with_debug_info(
    path: str, debug_root: str = DEFAULT_DEBUG_ROOT
) -> Optional[ObjectImage]:
    """
    Opens the image holding the line tables for the module at `path`.

    Debug links are followed first; when an image has no resolvable link its
    own debug information is used. The returned image is owned by the caller.

    Returns:
        The image with debug information, or None if there is none.

    Raises:
        ObjectParseError: If the module or a debug link target cannot be parsed.
    """
    stack = [ObjectImage.open(path)]
    visited: Set[str] = {os.path.realpath(path)}

    while stack:
        image = stack.pop()

        try:
            target = None
            link = image.debug_link()
            if link is not None:
                target = find_debug_link_target(
                    image.path, link.name, image.build_id(), debug_root
                )
                if target is not None and os.path.realpath(target) in visited:
                    LOGGER.debug(f"Debug link of {image.path} loops back to {target}")
                    target = None

            if target is None and image.has_debug_info():
                return image
        except Exception:
            image.close()
            raise

        image.close()
        if target is not None:
            LOGGER.debug(f"Following debug link of {image.path} to {target}")
            visited.add(os.path.realpath(target))
            stack.append(ObjectImage.open(target))

    return None
