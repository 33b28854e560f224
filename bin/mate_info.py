#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///

"""
Fill in mate information on a query-name sorted stream of alignments.

Consecutive records sharing a query name form a group. When the name changes
the group is resolved: its primary read 1 and read 2 get each other's
placement, strand, mapping quality (MQ) and CIGAR (MC), an unmapped end is
placed next to its mapped mate, and the group is emitted in the order it
arrived.
"""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

import pysam
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

MATE_CIGAR_TAG = "MC"
MATE_MAPPING_QUALITY_TAG = "MQ"

# Primary alignments expected per query name (one per end of the pair)
PAIR_SIZE: int = 2


def compute_insert_size(
    first: pysam.AlignedSegment,
    second: pysam.AlignedSegment,
) -> int:
    """
    Signed distance between the 5' ends of the two reads, inclusive.

    Positive when `second`'s 5' end lies at or downstream of `first`'s, zero
    if either read is unmapped or they sit on different references.
    """
    if first.is_unmapped or second.is_unmapped:
        return 0
    if first.reference_id != second.reference_id:
        return 0
    # 1-based inclusive coordinates
    first_5p = first.reference_end if first.is_reverse else first.reference_start + 1
    second_5p = second.reference_end if second.is_reverse else second.reference_start + 1
    adjustment = 1 if second_5p >= first_5p else -1
    return second_5p - first_5p + adjustment


def _clear_mate_tags(aln: pysam.AlignedSegment) -> None:
    aln.set_tag(MATE_MAPPING_QUALITY_TAG, None)
    aln.set_tag(MATE_CIGAR_TAG, None)


def _point_at_mate(
    aln: pysam.AlignedSegment,
    mate: pysam.AlignedSegment,
    set_mate_cigar: bool,  # noqa: FBT001
) -> bool:
    """Copy `mate`'s placement, strand, MQ and (optionally) MC onto `aln`."""
    aln.next_reference_id = mate.reference_id
    aln.next_reference_start = mate.reference_start
    aln.mate_is_reverse = mate.is_reverse
    aln.mate_is_unmapped = False
    aln.set_tag(MATE_MAPPING_QUALITY_TAG, mate.mapping_quality, value_type="i")

    mate_cigar = mate.cigarstring
    if not set_mate_cigar or not mate_cigar:
        aln.set_tag(MATE_CIGAR_TAG, None)
        return False
    aln.set_tag(MATE_CIGAR_TAG, mate_cigar, value_type="Z")
    return True


def set_mate_info(
    first: pysam.AlignedSegment,
    second: pysam.AlignedSegment,
    set_mate_cigar: bool = True,  # noqa: FBT001, FBT002
) -> int:
    """
    Make the mate fields of a primary pair agree with each other.

    Goes by whether each end is actually mapped, not by the incoming
    mate-unmapped flags:

      * both mapped: each end gets the other's placement, strand, MQ and MC,
        and the template length is filled in.
      * one mapped: the unmapped end is placed at the mapped end's position
        and learns its MQ and MC; the mapped end is flagged mate-unmapped,
        points at that same position and loses MQ and MC.
      * both unmapped: placements are cleared on both ends and the mate tags
        dropped.

    Pairs where either record is not flagged paired are left alone. Returns
    the number of MC tags written.
    """
    if not first.is_paired or not second.is_paired:
        return 0

    if not first.is_unmapped and not second.is_unmapped:
        added = int(_point_at_mate(first, second, set_mate_cigar))
        added += int(_point_at_mate(second, first, set_mate_cigar))
        insert_size = compute_insert_size(first, second)
        first.template_length = insert_size
        second.template_length = -insert_size
        return added

    if first.is_unmapped and second.is_unmapped:
        for aln, mate in ((first, second), (second, first)):
            aln.reference_id = -1
            aln.reference_start = -1
            aln.next_reference_id = -1
            aln.next_reference_start = -1
            aln.mate_is_reverse = mate.is_reverse
            aln.mate_is_unmapped = True
            aln.template_length = 0
            _clear_mate_tags(aln)
        return 0

    mapped, unmapped = (second, first) if first.is_unmapped else (first, second)
    unmapped.reference_id = mapped.reference_id
    unmapped.reference_start = mapped.reference_start

    mapped.next_reference_id = unmapped.reference_id
    mapped.next_reference_start = unmapped.reference_start
    mapped.mate_is_reverse = unmapped.is_reverse
    mapped.mate_is_unmapped = True
    mapped.template_length = 0
    _clear_mate_tags(mapped)

    unmapped.template_length = 0
    return int(_point_at_mate(unmapped, mapped, set_mate_cigar))


class MateInfoIterator:
    """
    Wraps a query-name sorted iterator and yields the same records, in the same
    order, with mate information filled in.

    States: accumulate records while the name matches the current group, flush
    the group when a new name arrives, and flush whatever is left once the
    input runs out.
    """

    def __init__(
        self,
        records: Iterable[pysam.AlignedSegment],
        set_mate_cigar: bool = True,  # noqa: FBT001, FBT002
    ) -> None:
        self._records = iter(records)
        self.set_mate_cigar = set_mate_cigar
        self._group: list[pysam.AlignedSegment] = []
        self._ready: deque[pysam.AlignedSegment] = deque()
        self._exhausted = False
        self.num_mate_cigars_added = 0
        self.num_groups = 0

    def __iter__(self) -> Iterator[pysam.AlignedSegment]:
        return self

    def __next__(self) -> pysam.AlignedSegment:
        while not self._ready:
            if self._exhausted:
                raise StopIteration
            try:
                aln = next(self._records)
            except StopIteration:
                self._exhausted = True
                self._flush()
                continue
            if self._group and aln.query_name != self._group[0].query_name:
                self._flush()
            self._group.append(aln)
        return self._ready.popleft()

    def _flush(self) -> None:
        if not self._group:
            return
        self._resolve_mates(self._group)
        self._ready.extend(self._group)
        self._group = []
        self.num_groups += 1

    def _pick_primaries(
        self,
        group: list[pysam.AlignedSegment],
    ) -> tuple[pysam.AlignedSegment, pysam.AlignedSegment] | None:
        """First primary read 1 and first primary read 2 of the group, if both exist."""
        primaries = [
            aln for aln in group if not aln.is_secondary and not aln.is_supplementary
        ]
        if len(primaries) < PAIR_SIZE:
            return None
        if len(primaries) > PAIR_SIZE:
            logger.warning(
                f"Found {len(primaries)} primary alignments for '{group[0].query_name}'; "
                "matching only the first read 1 and read 2",
            )
        first = next((aln for aln in primaries if aln.is_read1), None)
        second = next((aln for aln in primaries if aln.is_read2), None)
        if first is None or second is None:
            return None
        return first, second

    def _resolve_mates(self, group: list[pysam.AlignedSegment]) -> None:
        pair = self._pick_primaries(group)
        if pair is None:
            return
        self.num_mate_cigars_added += set_mate_info(*pair, set_mate_cigar=self.set_mate_cigar)
