# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for the revert-and-add-mate-cigar tools.

Provides a small two-contig header, a factory for pysam.AlignedSegment records
and helpers that write them to SAM/BAM files for end-to-end tests.
"""

import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

REFERENCE_LENGTHS = {"chr1": 1000, "chr2": 500}


def create_sam_header(sort_order: str = "unsorted") -> dict[str, Any]:
    """Create a minimal SAM header for testing."""
    return {
        "HD": {"VN": "1.6", "SO": sort_order},
        "SQ": [{"SN": name, "LN": length} for name, length in REFERENCE_LENGTHS.items()],
        "PG": [{"ID": "test", "PN": "revert_oq_test", "VN": "0.1.0"}],
    }


def make_read(  # noqa: PLR0913
    header: pysam.AlignmentHeader,
    query_name: str = "read",
    reference_id: int = 0,
    reference_start: int = 100,
    cigar: list[tuple[int, int]] | None = None,
    *,
    paired: bool = False,
    read1: bool = False,
    read2: bool = False,
    unmapped: bool = False,
    mate_unmapped: bool = False,
    reverse: bool = False,
    secondary: bool = False,
    supplementary: bool = False,
    mate_reference_id: int = -1,
    mate_start: int = -1,
    mapping_quality: int = 60,
    qualities: list[int] | None = None,
    original_qualities: str | None = None,
    mate_cigar: str | None = None,
) -> pysam.AlignedSegment:
    """Build an AlignedSegment; the query length follows the CIGAR."""
    if cigar is None:
        cigar = [(0, 20)]
    seq_len = sum(ln for op, ln in cigar if op in {0, 1, 4, 7, 8})
    aln = pysam.AlignedSegment(header)
    aln.query_name = query_name
    aln.query_sequence = "ACGT" * (seq_len // 4) + "A" * (seq_len % 4)
    aln.query_qualities = qualities if qualities is not None else [30] * seq_len
    aln.is_paired = paired
    aln.is_read1 = read1
    aln.is_read2 = read2
    aln.is_reverse = reverse
    aln.is_secondary = secondary
    aln.is_supplementary = supplementary
    aln.mate_is_unmapped = mate_unmapped
    aln.next_reference_id = mate_reference_id
    aln.next_reference_start = mate_start
    if unmapped:
        aln.is_unmapped = True
        aln.reference_id = -1
        aln.reference_start = -1
        aln.mapping_quality = 0
    else:
        aln.reference_id = reference_id
        aln.reference_start = reference_start
        aln.cigartuples = cigar
        aln.mapping_quality = mapping_quality
    if original_qualities is not None:
        aln.set_tag("OQ", original_qualities, value_type="Z")
    if mate_cigar is not None:
        aln.set_tag("MC", mate_cigar, value_type="Z")
    return aln


def make_pair(
    header: pysam.AlignmentHeader,
    query_name: str,
    start1: int = 100,
    start2: int = 300,
    **kwargs: Any,
) -> tuple[pysam.AlignedSegment, pysam.AlignedSegment]:
    """A properly oriented, fully mapped pair on chr1 without mate info filled in."""
    r1 = make_read(
        header, query_name, 0, start1, [(0, 20)], paired=True, read1=True,
        mate_reference_id=0, mate_start=start2, **kwargs,
    )
    r2 = make_read(
        header, query_name, 0, start2, [(0, 15), (4, 5)], paired=True, read2=True,
        reverse=True, mate_reference_id=0, mate_start=start1, **kwargs,
    )
    return r1, r2


def write_alignment_file(
    path: Path,
    records: list[pysam.AlignedSegment],
    header: dict[str, Any] | None = None,
) -> Path:
    """Write records to SAM or BAM (by extension) and return the path."""
    mode = "wb" if path.suffix == ".bam" else "w"
    with pysam.AlignmentFile(str(path), mode, header=header or create_sam_header()) as out:
        for aln in records:
            out.write(aln)
    return path


def read_alignment_file(path: Path) -> list[pysam.AlignedSegment]:
    with pysam.AlignmentFile(str(path), check_sq=False) as inp:
        return list(inp)


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def header() -> pysam.AlignmentHeader:
    return pysam.AlignmentHeader.from_dict(create_sam_header())


@pytest.fixture
def read_factory(header: pysam.AlignmentHeader) -> Callable[..., pysam.AlignedSegment]:
    """make_read bound to the shared test header."""

    def factory(*args: Any, **kwargs: Any) -> pysam.AlignedSegment:
        return make_read(header, *args, **kwargs)

    return factory


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
