#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///

"""
Bounded-memory external sort for alignment records.

Records are buffered in memory up to a fixed count. A full buffer is sorted and
spilled to a temporary BAM file (a "run"). `finish()` then yields one globally
sorted stream through a lazy k-way merge over all runs, so memory is capped at
the buffer size plus one record per run, whatever the input size.
"""

from __future__ import annotations

import heapq
import os
import shutil
import tempfile
from typing import TYPE_CHECKING

import pysam
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from types import TracebackType

DEFAULT_MAX_RECORDS_IN_RAM: int = 500_000


def query_name_key(aln: pysam.AlignedSegment) -> tuple[str, int, int]:
    """
    Sort key grouping records by query name.

    Names compare by code point, which is UTF-8 byte order. Within a name,
    first-of-pair sorts before second-of-pair, and primary before secondary
    before supplementary.
    """
    if aln.is_read1:
        end = 0
    elif aln.is_read2:
        end = 1
    else:
        end = 2
    if aln.is_supplementary:
        kind = 2
    elif aln.is_secondary:
        kind = 1
    else:
        kind = 0
    return (aln.query_name or "", end, kind)


def coordinate_key(aln: pysam.AlignedSegment) -> tuple[int, int, int]:
    """Sort key for coordinate order; unmapped reads without a placement go last."""
    tid = aln.reference_id
    if tid is None or tid < 0:
        return (1, 0, 0)
    return (0, tid, aln.reference_start)


class SortingCollection:
    """
    Collects records with `add()` and hands them back sorted from `finish()`.

    Use as a context manager: the temporary spill directory is owned by the
    collection and removed on exit, including when the run fails.
    """

    def __init__(
        self,
        header: pysam.AlignmentHeader | dict,
        max_records_in_ram: int = DEFAULT_MAX_RECORDS_IN_RAM,
        key: Callable[[pysam.AlignedSegment], object] = query_name_key,
        tmp_dir: str | None = None,
        compression_level: int = 1,
    ) -> None:
        assert max_records_in_ram > 0, (
            f"max_records_in_ram must be positive, got {max_records_in_ram}"
        )
        assert 0 <= compression_level <= 9, (  # noqa: PLR2004
            f"compression_level must be 0-9, got {compression_level}"
        )
        if isinstance(header, dict):
            header = pysam.AlignmentHeader.from_dict(header)
        self.header = header
        self.max_records_in_ram = max_records_in_ram
        self.key = key
        self.tmp_parent = tmp_dir
        self.compression_level = compression_level

        self._buffer: list[pysam.AlignedSegment] = []
        self._spill_dir: str | None = None
        self._spill_files: list[str] = []
        self._finished = False

        self.num_records = 0
        self.max_buffered = 0

    # -- context management ------------------------------------------------ #

    def __enter__(self) -> SortingCollection:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Drop buffered records and remove every spill file."""
        self._buffer.clear()
        if self._spill_dir is not None:
            shutil.rmtree(self._spill_dir, ignore_errors=True)
            logger.debug(f"Removed spill directory {self._spill_dir}")
            self._spill_dir = None
        self._spill_files.clear()

    # -- collection -------------------------------------------------------- #

    @property
    def num_spilled_runs(self) -> int:
        return len(self._spill_files)

    @property
    def num_runs(self) -> int:
        """Sorted runs the merge will read: spill files plus any residual buffer."""
        return self.num_spilled_runs + (1 if self._buffer else 0)

    def add(self, aln: pysam.AlignedSegment) -> None:
        if self._finished:
            msg = "Cannot add records to a SortingCollection after finish()"
            raise RuntimeError(msg)
        self._buffer.append(aln)
        self.num_records += 1
        self.max_buffered = max(self.max_buffered, len(self._buffer))
        if len(self._buffer) >= self.max_records_in_ram:
            self._spill()

    def _spill(self) -> None:
        if self._spill_dir is None:
            self._spill_dir = tempfile.mkdtemp(prefix="sortingcollection.", dir=self.tmp_parent)
            logger.debug(f"Created spill directory {self._spill_dir}")

        self._buffer.sort(key=self.key)
        path = os.path.join(self._spill_dir, f"run{len(self._spill_files):06d}.bam")
        with pysam.AlignmentFile(path, f"wb{self.compression_level}", header=self.header) as run:
            for aln in self._buffer:
                run.write(aln)
        self._spill_files.append(path)
        logger.debug(f"Spilled {len(self._buffer)} records to {path}")
        self._buffer.clear()

    # -- merge ------------------------------------------------------------- #

    def _read_run(self, path: str) -> Iterator[pysam.AlignedSegment]:
        """Stream one spill file, deleting it once it has been fully consumed."""
        try:
            with pysam.AlignmentFile(path, "rb", check_sq=False) as run:
                yield from run
        finally:
            if os.path.exists(path):
                os.remove(path)

    def finish(self) -> Iterator[pysam.AlignedSegment]:
        """
        Stop collecting and return every record in sorted order, lazily.
        """
        if self._finished:
            msg = "finish() was already called on this SortingCollection"
            raise RuntimeError(msg)
        self._finished = True

        self._buffer.sort(key=self.key)
        logger.debug(
            f"Sorting {self.num_records} records from {self.num_spilled_runs} spilled run(s) "
            f"and {len(self._buffer)} buffered record(s)",
        )

        if not self._spill_files:
            return self._drain_buffer()
        runs: list[Iterator[pysam.AlignedSegment]] = [
            self._read_run(path) for path in self._spill_files
        ]
        if self._buffer:
            runs.append(self._drain_buffer())
        if len(runs) == 1:
            return runs[0]
        return heapq.merge(*runs, key=self.key)

    def _drain_buffer(self) -> Iterator[pysam.AlignedSegment]:
        buffer = self._buffer
        self._buffer = []
        yield from buffer
