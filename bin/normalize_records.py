#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///

"""
Per-record streaming fixes applied before mate information is rebuilt:

  - alignments running past the end of their reference are soft-clipped so
    the computed alignment end equals the reference length;
  - original base qualities stored in the OQ tag are restored into QUAL.

Both transforms mutate the pysam.AlignedSegment in place and preserve order.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, NamedTuple

import pysam
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# CIGAR op codes
# 0:M, 1:I, 2:D, 3:N, 4:S, 5:H, 6:P, 7:=, 8:X
REF_CONSUME = {0, 2, 3, 7, 8}
QRY_CONSUME = {0, 1, 4, 7, 8}
BOTH_CONSUME = {0, 7, 8}

SOFT_CLIP = 4
HARD_CLIP = 5

ORIGINAL_QUALITIES_TAG = "OQ"


# ---------------------------- CIGAR UTILITIES ------------------------------ #


class CigarOp(NamedTuple):
    """One CIGAR run: (operation code, run length)."""

    op: int
    length: int


class Cigar(list[CigarOp]):
    """A list of CigarOp with helpers for conversion and compaction."""

    @classmethod
    def from_pysam(cls, cig_raw: list[tuple[int, int]] | None) -> Cigar | None:
        """
        Convert pysam's list[(op, len)] to a Cigar. Returns None if input is None.
        """
        if cig_raw is None:
            return None
        return cls(CigarOp(op, ln) for op, ln in cig_raw)

    def to_pysam(self) -> list[tuple[int, int]]:
        """Convert this Cigar back to list[(op, len)] for pysam."""
        return [(run.op, run.length) for run in self]

    def push_compact(self, op: int, ln: int) -> None:
        """
        Append (op, ln), merging with the last run if `op` matches.
        Ignores non-positive lengths.
        """
        assert 0 <= op <= 8, (  # noqa: PLR2004
            f"Invalid CIGAR operation code {op}: must be 0-8 (M,I,D,N,S,H,P,=,X)"
        )
        if ln <= 0:
            return
        if self and self[-1].op == op:
            self[-1] = CigarOp(op, self[-1].length + ln)
            return
        self.append(CigarOp(op, ln))

    def query_length(self) -> int:
        """Number of query bases described by this CIGAR (hard clips excluded)."""
        return sum(run.length for run in self if run.op in QRY_CONSUME)


def reference_span(cig: Iterable[tuple[int, int]]) -> int:
    """Reference bases consumed by a CIGAR (M, D, N, =, X)."""
    return sum(ln for op, ln in cig if op in REF_CONSUME)


def clip_off_reference_end(cig: Cigar, max_ref_bases: int) -> Cigar:
    """
    Soft-clip the tail of `cig` so it consumes at most `max_ref_bases`
    reference bases.

    Query bases past the boundary fold into one trailing soft clip (merged
    with any soft clip already there). Trailing hard clips are kept. Deletions
    and skips past the boundary are dropped, and an insertion left dangling at
    the new end joins the soft clip, so the result never ends on a
    non-aligned operation.
    """
    assert max_ref_bases > 0, (
        f"Cannot clip to a non-positive reference span: {max_ref_bases}"
    )

    body = list(cig)
    tail_hard = Cigar()
    while body and body[-1].op == HARD_CLIP:
        tail_hard.insert(0, body.pop())

    out = Cigar()
    ref_used = 0
    clipped = 0
    past_boundary = False
    for run in body:
        if past_boundary:
            if run.op in QRY_CONSUME:
                clipped += run.length
            continue
        if run.op not in REF_CONSUME:
            out.push_compact(run.op, run.length)
            continue
        take = min(run.length, max_ref_bases - ref_used)
        out.push_compact(run.op, take)
        ref_used += take
        if take < run.length:
            past_boundary = True
            if run.op in QRY_CONSUME:
                clipped += run.length - take

    # Walk back to the last aligned base
    while out and out[-1].op not in BOTH_CONSUME:
        last = out.pop()
        if last.op in QRY_CONSUME:
            clipped += last.length

    if not out or all(run.op == HARD_CLIP for run in out):
        msg = f"No aligned bases remain after clipping CIGAR {cig.to_pysam()} to {max_ref_bases} reference bases"
        logger.error(msg)
        raise ValueError(msg)

    out.push_compact(SOFT_CLIP, clipped)
    for run in tail_hard:
        out.push_compact(run.op, run.length)

    assert out.query_length() == cig.query_length(), (
        f"Clipping changed the query length: {cig.to_pysam()} -> {out.to_pysam()}"
    )
    assert reference_span(out.to_pysam()) <= max_ref_bases, (
        f"Clipped CIGAR {out.to_pysam()} still spans more than {max_ref_bases} reference bases"
    )
    return out


def clip_if_maps_off_reference(
    aln: pysam.AlignedSegment,
    reference_lengths: Sequence[int],
) -> bool:
    """
    Soft-clip a mapped alignment that runs past the end of its reference.

    Returns True if the CIGAR was rewritten. Unmapped reads, reads without a
    CIGAR and reads that already fit are left alone.

    Raises:
        ValueError: the reference index is not in the header, or the alignment
            starts at or past the end of its reference.
    """
    if aln.is_unmapped:
        return False
    cig = Cigar.from_pysam(aln.cigartuples)
    if not cig:
        return False

    tid = aln.reference_id
    if tid is None or tid < 0 or tid >= len(reference_lengths):
        msg = f"Read '{aln.query_name}' is mapped to reference index {tid}, which is not in the header"
        logger.error(msg)
        raise ValueError(msg)

    ref_len = reference_lengths[tid]
    start = aln.reference_start
    end = start + reference_span(cig.to_pysam())
    if end <= ref_len:
        return False

    if start >= ref_len:
        msg = f"Read '{aln.query_name}' starts at {start + 1}, past the end of its reference (length {ref_len})"
        logger.error(msg)
        raise ValueError(msg)

    new_cig = clip_off_reference_end(cig, ref_len - start)
    logger.debug(
        f"Clipping '{aln.query_name}' off the end of reference {tid}: "
        f"{aln.cigarstring} -> end {end} > {ref_len}",
    )
    aln.cigartuples = new_cig.to_pysam()
    return True


# -------------------------- QUALITY REVERSION ------------------------------ #


def revert_original_qualities(aln: pysam.AlignedSegment) -> bool:
    """Move OQ into QUAL and drop the tag. Returns True if anything changed."""
    if not aln.has_tag(ORIGINAL_QUALITIES_TAG):
        return False
    original = aln.get_tag(ORIGINAL_QUALITIES_TAG)
    aln.query_qualities = pysam.qualitystring_to_array(original)
    aln.set_tag(ORIGINAL_QUALITIES_TAG, None)
    return True


# ------------------------------ NORMALIZER --------------------------------- #


class RecordNormalizer:
    """
    Applies the off-end repair and, optionally, quality reversion to each
    record, keeping the counts the run summary reports.
    """

    def __init__(
        self,
        reference_lengths: Sequence[int],
        restore_original_qualities: bool = True,  # noqa: FBT001, FBT002
    ) -> None:
        self.reference_lengths = tuple(reference_lengths)
        self.restore_original_qualities = restore_original_qualities
        self.num_original_qualities_restored = 0
        self.num_clipped_off_reference = 0
        self.found_paired_mapped_reads = False

    def __call__(self, aln: pysam.AlignedSegment) -> pysam.AlignedSegment:
        if clip_if_maps_off_reference(aln, self.reference_lengths):
            self.num_clipped_off_reference += 1
        if self.restore_original_qualities and revert_original_qualities(aln):
            self.num_original_qualities_restored += 1
        if not self.found_paired_mapped_reads and aln.is_paired and not aln.is_unmapped:
            self.found_paired_mapped_reads = True
        return aln

    def normalize(
        self,
        records: Iterable[pysam.AlignedSegment],
    ) -> Iterator[pysam.AlignedSegment]:
        """Lazily normalize `records`, in order."""
        for aln in records:
            yield self(aln)
