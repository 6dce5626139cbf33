"""reduction of a trace corpus to the files with distinct coverage"""

import logging
from typing import FrozenSet, List, Set

from .drcov import Modules

LOGGER = logging.getLogger("drcov2lcov")


def coverage_signature(modules: Modules) -> FrozenSet[int]:
    """union of the executed offsets of every module of one trace"""
    return frozenset(modules.get_coverage_all())


class SetReducer:
    """
    keeps the first trace of every distinct coverage signature

    signatures are compared for exact equality only: a trace whose coverage is
    a strict subset of an already kept one is still kept.
    """

    def __init__(self):
        self._signatures: Set[FrozenSet[int]] = set()
        self.reduced_paths: List[str] = []

    def __len__(self) -> int:
        return len(self.reduced_paths)

    def add(self, path: str, modules: Modules) -> bool:
        """consider one decoded trace, returns True if it was kept"""
        signature = coverage_signature(modules)
        if signature in self._signatures:
            LOGGER.debug(f"Coverage of {path} duplicates an earlier trace")
            return False

        self._signatures.add(signature)
        self.reduced_paths.append(path)
        return True

    def to_text(self) -> str:
        return "\n".join(self.reduced_paths)

    def write(self, path: str):
        with open(path, "w", encoding="utf-8", errors="surrogateescape") as f:
            f.write(self.to_text())
        LOGGER.info(f"Wrote {len(self)} reduced trace paths to {path}")
