#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
#     "pysam",
# ]
# ///

"""
Revert original base qualities (OQ -> QUAL) and add mate CIGAR (MC) tags to a
SAM/BAM/CRAM file.

If a quick look at the head of the file finds no OQ tags to restore and mate
CIGARs already present, the file is left alone. Otherwise every record is
repaired if it maps off the end of its reference, optionally has its original
qualities restored, and goes through a bounded-memory sort by query name so
that mates can be matched up and annotated before the output is written.
"""

import argparse
import os
import shutil
import sys
from collections.abc import Iterable, Sequence
from dataclasses import dataclass as std_dataclass
from pathlib import Path

import pysam
from loguru import logger
from pydantic import Field, field_validator
from pydantic.dataclasses import dataclass

from external_sort import SortingCollection, coordinate_key
from mate_info import MateInfoIterator
from normalize_records import RecordNormalizer
from skip_scan import CanSkipAlignmentFile, can_skip_alignment_file

# ------------------------------- CONSTANTS -------------------------------- #

# Emit a progress debug line after this many records in each pass
PROGRESS_EVERY: int = 1_000_000

SORT_ORDERS = ("unsorted", "queryname", "coordinate", "unknown")


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass
class RevertConfig:
    """Inputs and knobs for one revert-and-add-mate-cigar run."""

    input_path: Path
    output_path: Path
    sort_order: str | None = None  # None keeps the input's sort order
    restore_original_qualities: bool = True
    max_records_to_examine: int = Field(default=10_000, ge=0)  # 0 never skips
    max_records_in_ram: int = Field(default=500_000, ge=1)
    tmp_dir: Path | None = None
    reference: Path | None = None  # FASTA for CRAM
    create_index: bool = True
    copy_on_skip: bool = False
    compression_level: int = Field(default=1, ge=0, le=9)  # spill files only

    @field_validator("sort_order")
    @classmethod
    def known_sort_order(cls, v: str | None) -> str | None:
        if v is not None and v not in SORT_ORDERS:
            error_msg = f"sort_order must be one of {', '.join(SORT_ORDERS)}, got {v!r}"
            raise ValueError(error_msg)
        return v


@std_dataclass
class RevertSummary:
    """Counters reported at the end of a run."""

    skipped: bool = False
    skip_reason: CanSkipAlignmentFile | None = None
    sort_order: str | None = None
    num_records_written: int = 0
    num_original_qualities_restored: int = 0
    num_clipped_off_reference: int = 0
    num_mate_cigars_added: int = 0
    found_paired_mapped_reads: bool = False


# ----------------------------- LOGGING SETUP ------------------------------- #

# Quietest to loudest
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "SUCCESS", "INFO", "DEBUG", "TRACE")
DEFAULT_LOG_LEVEL_INDEX = LOG_LEVELS.index("SUCCESS")


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Each -v moves one step louder from SUCCESS (INFO, DEBUG, TRACE) and each
    -q one step quieter (WARNING, ERROR, CRITICAL). Extra flags past either
    end are ignored.
    """
    logger.remove()
    index = DEFAULT_LOG_LEVEL_INDEX + verbose - quiet
    level_str = LOG_LEVELS[min(max(index, 0), len(LOG_LEVELS) - 1)]
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ----------------------------- I/O UTILITIES ------------------------------- #

# Extension -> (read mode, write mode)
ALIGNMENT_MODES = {
    ".sam": ("r", "w"),
    ".bam": ("rb", "wb"),
    ".cram": ("rc", "wc"),
}


def _io_mode_from_ext(path: str, write: bool) -> str:  # noqa: FBT001
    """pysam open mode for `path`, from its extension."""
    modes = ALIGNMENT_MODES.get(Path(path).suffix.lower())
    if modes is None:
        msg = "Output/input must end with .sam, .bam, or .cram"
        logger.error(msg)
        raise ValueError(msg)
    return modes[1] if write else modes[0]


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    header: pysam.AlignmentHeader | dict | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM with the mode implied by the extension. Writing needs a
    header; CRAM wants a reference filename.
    """
    mode = _io_mode_from_ext(path, write)

    kwargs = {}
    if path.lower().endswith(".cram"):
        if reference is None:
            logger.warning(
                f"Opening CRAM without explicit reference: {path}. "
                "Decoding may fail unless the reference is resolvable.",
            )
        else:
            kwargs["reference_filename"] = reference

    action = "write" if write else "read"
    logger.debug(f"Opening for {action}: {path} (mode={mode})")
    if write:
        if header is None:
            msg = f"Writing to '{path}' requires a header"
            logger.error(msg)
            raise ValueError(msg)
        return pysam.AlignmentFile(path, mode, header=header, **kwargs)
    return pysam.AlignmentFile(path, mode, check_sq=False, **kwargs)


def check_paths(config: RevertConfig) -> None:
    """Fail before any work is done if the input is unreadable or the output unwritable."""
    inp = config.input_path
    if not inp.is_file() or not os.access(inp, os.R_OK):
        msg = f"Input file is not readable: {inp}"
        logger.error(msg)
        raise FileNotFoundError(msg)

    out = config.output_path
    out_dir = out.parent
    if out.exists():
        if out.is_dir() or not os.access(out, os.W_OK):
            msg = f"Output file is not writable: {out}"
            logger.error(msg)
            raise PermissionError(msg)
    elif not out_dir.is_dir() or not os.access(out_dir, os.W_OK):
        msg = f"Output directory is not writable: {out_dir}"
        logger.error(msg)
        raise PermissionError(msg)

    # Both extensions must be understood before anything is opened
    _io_mode_from_ext(str(inp), write=False)
    _io_mode_from_ext(str(out), write=True)


def build_output_header(header: pysam.AlignmentHeader, sort_order: str) -> dict:
    """Copy of the input header declaring `sort_order`."""
    out = header.to_dict()
    hd = dict(out.get("HD", {"VN": "1.6"}))
    hd["SO"] = sort_order
    out["HD"] = hd
    return out


def input_sort_order(header: pysam.AlignmentHeader) -> str:
    return header.to_dict().get("HD", {}).get("SO", "unsorted")


# ------------------------------ CORE LOGIC --------------------------------- #


def collect_records(
    records: Iterable[pysam.AlignedSegment],
    normalizer: RecordNormalizer,
    sorter: SortingCollection,
) -> int:
    """First pass: normalize every record and hand it to the sorter."""
    seen = 0
    for aln in normalizer.normalize(records):
        sorter.add(aln)
        seen += 1
        if seen % PROGRESS_EVERY == 0:
            logger.debug(
                f"Progress: read={seen}, reverted_oqs={normalizer.num_original_qualities_restored}, "
                f"spilled_runs={sorter.num_spilled_runs}",
            )
    return seen


def write_records(
    records: Iterable[pysam.AlignedSegment],
    outp: pysam.AlignmentFile,
    label: str,
) -> int:
    written = 0
    for aln in records:
        outp.write(aln)
        written += 1
        if written % PROGRESS_EVERY == 0:
            logger.debug(f"Progress: {label}={written}")
    return written


def revert_and_add_mate_cigar(config: RevertConfig) -> RevertSummary:
    """
    Run the skip scan and, unless it says the file is already fine, the full
    normalize -> sort by name -> add mate info -> write pipeline.
    """
    check_paths(config)
    in_path = str(config.input_path)
    out_path = str(config.output_path)
    reference = None if config.reference is None else str(config.reference)
    summary = RevertSummary()

    # Check if we can skip this file since it has no OQ tags and mate cigars are already there
    decision = can_skip_alignment_file(
        in_path,
        config.max_records_to_examine,
        config.restore_original_qualities,
        reference=reference,
    )
    summary.skip_reason = decision
    logger.info(decision.message(config.max_records_to_examine))
    if decision.can_skip:
        summary.skipped = True
        if config.copy_on_skip:
            shutil.copyfile(in_path, out_path)
            logger.info(f"Copied {in_path} to {out_path} unchanged")
        return summary

    tmp_dir = None if config.tmp_dir is None else str(config.tmp_dir)
    with open_alignment(in_path, write=False, reference=reference) as inp:
        sort_order = config.sort_order or input_sort_order(inp.header)
        summary.sort_order = sort_order
        out_header = build_output_header(inp.header, sort_order)

        normalizer = RecordNormalizer(
            inp.header.lengths,
            restore_original_qualities=config.restore_original_qualities,
        )
        with SortingCollection(
            inp.header,
            max_records_in_ram=config.max_records_in_ram,
            tmp_dir=tmp_dir,
            compression_level=config.compression_level,
        ) as sorter:
            collect_records(inp, normalizer, sorter)
            logger.info(
                f"Reverted the original base qualities for {normalizer.num_original_qualities_restored} records",
            )
            if normalizer.num_clipped_off_reference:
                logger.info(
                    f"Clipped {normalizer.num_clipped_off_reference} records that mapped off the end of their reference",
                )

            mates = MateInfoIterator(sorter.finish(), set_mate_cigar=True)
            try:
                with open_alignment(out_path, write=True, header=out_header, reference=reference) as outp:
                    if sort_order == "coordinate":
                        with SortingCollection(
                            out_header,
                            max_records_in_ram=config.max_records_in_ram,
                            key=coordinate_key,
                            tmp_dir=tmp_dir,
                            compression_level=config.compression_level,
                        ) as by_coordinate:
                            for aln in mates:
                                by_coordinate.add(aln)
                            written = write_records(by_coordinate.finish(), outp, "written")
                    else:
                        written = write_records(mates, outp, "mate_cigars_added")
            except (OSError, ValueError):
                if os.path.exists(out_path):
                    os.remove(out_path)
                raise

    summary.num_records_written = written
    summary.num_original_qualities_restored = normalizer.num_original_qualities_restored
    summary.num_clipped_off_reference = normalizer.num_clipped_off_reference
    summary.num_mate_cigars_added = mates.num_mate_cigars_added
    summary.found_paired_mapped_reads = normalizer.found_paired_mapped_reads

    logger.info(f"Updated {summary.num_mate_cigars_added} records with mate cigar")
    if not summary.found_paired_mapped_reads:
        logger.info("Did not find any paired mapped reads.")

    if config.create_index and sort_order == "coordinate" and not out_path.lower().endswith(".sam"):
        logger.debug(f"Indexing {out_path}")
        pysam.index(out_path)

    return summary


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Revert the original base qualities (OQ) and add the mate cigar tag (MC) to a SAM/BAM/CRAM.\n"
            "If the file has no OQs (when restoring) and already has mate cigars, nothing is written.\n"
            "Reads mapping off the end of their reference are soft-clipped."
        ),
    )

    # I/O
    p.add_argument(
        "-i",
        "--in",
        dest="in_path",
        required=True,
        help="Input SAM/BAM/CRAM",
    )
    p.add_argument(
        "-o",
        "--out",
        dest="out_path",
        required=True,
        help="Output SAM/BAM/CRAM",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )
    p.add_argument(
        "--sort-order",
        choices=SORT_ORDERS,
        default=None,
        help="Sort order of the output (default: same as the input)",
    )

    # Behaviour
    p.add_argument(
        "--restore-original-qualities",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Restore original qualities from the OQ tag to QUAL when present (default: on)",
    )
    p.add_argument(
        "--max-records-to-examine",
        type=int,
        default=10_000,
        help=(
            "Maximum number of records to examine when deciding whether the file can be left alone. "
            "Set to 0 to never skip the file."
        ),
    )
    p.add_argument(
        "--copy-on-skip",
        action="store_true",
        help="Copy the input to the output when the file can be skipped (otherwise nothing is written)",
    )

    # Sorting / output artifacts
    p.add_argument(
        "--max-records-in-ram",
        type=int,
        default=500_000,
        help="Records held in memory before spilling a sorted run to disk",
    )
    p.add_argument(
        "--tmp-dir",
        default=None,
        help="Directory for spilled sort runs (default: system temp dir)",
    )
    p.add_argument(
        "--compression-level",
        type=int,
        default=1,
        help="BAM compression level (0-9) for spilled sort runs",
    )
    p.add_argument(
        "--create-index",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Index coordinate-sorted BAM/CRAM output (default: on)",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting revert run.")

    try:
        config = RevertConfig(
            input_path=Path(args.in_path),
            output_path=Path(args.out_path),
            sort_order=args.sort_order,
            restore_original_qualities=args.restore_original_qualities,
            max_records_to_examine=args.max_records_to_examine,
            max_records_in_ram=args.max_records_in_ram,
            tmp_dir=None if args.tmp_dir is None else Path(args.tmp_dir),
            reference=None if args.reference is None else Path(args.reference),
            create_index=args.create_index,
            copy_on_skip=args.copy_on_skip,
            compression_level=args.compression_level,
        )
        logger.debug(f"RevertConfig: {config}")
        summary = revert_and_add_mate_cigar(config)
    except (OSError, ValueError) as e:
        logger.error(f"Revert run failed: {e}")
        sys.exit(1)

    if summary.skipped:
        logger.success(f"Skipped {args.in_path}: {summary.skip_reason.message(args.max_records_to_examine)}")
        return
    logger.success(
        f"Written: {summary.num_records_written} | "
        f"Original qualities restored: {summary.num_original_qualities_restored} | "
        f"Mate cigars added: {summary.num_mate_cigars_added} | "
        f"Clipped off reference end: {summary.num_clipped_off_reference}",
    )
    logger.info("Revert run complete.")


if __name__ == "__main__":
    main()
