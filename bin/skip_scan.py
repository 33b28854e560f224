#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///

"""
Bounded look-ahead deciding whether an alignment file needs rewriting at all.

A file can be skipped when it has no OQ tags to restore (if restoring) and its
paired reads already carry mate CIGARs. Only the first few records are read;
when they are inconclusive the caller runs the full pipeline.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

import pysam
from loguru import logger

from mate_info import MATE_CIGAR_TAG
from normalize_records import ORIGINAL_QUALITIES_TAG

if TYPE_CHECKING:
    from collections.abc import Iterable


class CanSkipAlignmentFile(Enum):
    """Outcome of the skip scan, with the explanation that gets logged."""

    CAN_SKIP = ("Can skip the alignment file", True)
    CANNOT_SKIP_FOUND_OQ = ("Cannot skip the alignment file as we found a record with an OQ", False)
    CANNOT_SKIP_FOUND_NO_MC = (
        "Cannot skip the alignment file as we found a mate with no mate cigar tag",
        False,
    )
    FOUND_NO_EVIDENCE = (
        "Found no evidence of OQ or mate with no mate cigar in the first {max_records} records.  Will continue...",
        False,
    )

    def __init__(self, template: str, can_skip: bool) -> None:  # noqa: FBT001
        self.template = template
        self.can_skip = can_skip

    def message(self, max_records_to_examine: int) -> str:
        return self.template.format(max_records=max_records_to_examine)


def scan_records(
    records: Iterable[pysam.AlignedSegment],
    max_records_to_examine: int,
    revert_original_qualities: bool = True,  # noqa: FBT001, FBT002
) -> CanSkipAlignmentFile:
    """
    Examine at most `max_records_to_examine` records in stream order.

    The first OQ (when reverting) or the first paired read with a mapped mate
    decides the outcome. Running out of records first means there is nothing
    to fix; hitting the limit first is inconclusive. A limit of 0 never skips.
    """
    if max_records_to_examine <= 0:
        return CanSkipAlignmentFile.FOUND_NO_EVIDENCE

    examined = 0
    for aln in records:
        if examined >= max_records_to_examine:
            return CanSkipAlignmentFile.FOUND_NO_EVIDENCE
        examined += 1

        if revert_original_qualities and aln.has_tag(ORIGINAL_QUALITIES_TAG):
            logger.debug(f"Found OQ on record {examined} ('{aln.query_name}')")
            return CanSkipAlignmentFile.CANNOT_SKIP_FOUND_OQ

        if aln.is_paired and not aln.mate_is_unmapped:
            if not aln.has_tag(MATE_CIGAR_TAG):
                logger.debug(f"Found mate without MC on record {examined} ('{aln.query_name}')")
                return CanSkipAlignmentFile.CANNOT_SKIP_FOUND_NO_MC
            return CanSkipAlignmentFile.CAN_SKIP

    # stream exhausted before the limit without evidence of anything to change
    return CanSkipAlignmentFile.CAN_SKIP


def can_skip_alignment_file(
    path: str,
    max_records_to_examine: int,
    revert_original_qualities: bool = True,  # noqa: FBT001, FBT002
    reference: str | None = None,
) -> CanSkipAlignmentFile:
    """
    Run the skip scan on its own reader over `path`, leaving the main
    pipeline free to open a fresh one.
    """
    if max_records_to_examine <= 0:
        return CanSkipAlignmentFile.FOUND_NO_EVIDENCE

    kwargs = {}
    if reference is not None:
        kwargs["reference_filename"] = reference
    with pysam.AlignmentFile(path, check_sq=False, **kwargs) as inp:
        return scan_records(
            inp,
            max_records_to_examine,
            revert_original_qualities,
        )
