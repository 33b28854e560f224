"""
Unit tests for external_sort.py

Exercises the in-memory path, spilling to temporary BAM runs, the k-way merge
and cleanup of the spill directory.
"""

import math
import random

import pytest
from external_sort import SortingCollection, coordinate_key, query_name_key


def _names(records):
    return [aln.query_name for aln in records]


@pytest.fixture
def shuffled_reads(read_factory):
    """Twenty fragments, two primary reads each, in random order."""
    reads = []
    for i in range(20):
        reads.append(read_factory(f"frag{i:03d}", 0, 10 * i, paired=True, read1=True))
        reads.append(read_factory(f"frag{i:03d}", 0, 10 * i + 200, paired=True, read2=True, reverse=True))
    random.Random(7).shuffle(reads)
    return reads


class TestQueryNameKey:
    """Test the query-name comparator."""

    def test_name_first(self, read_factory):
        assert query_name_key(read_factory("a", read2=True)) < query_name_key(read_factory("b", read1=True))

    def test_byte_order(self, read_factory):
        # Upper case sorts before lower case, digits are not compared numerically
        names = ["b", "B", "a10", "a9"]
        ordered = sorted((read_factory(n) for n in names), key=query_name_key)
        assert _names(ordered) == ["B", "a10", "a9", "b"]

    def test_read1_before_read2(self, read_factory):
        r1 = read_factory("x", paired=True, read1=True)
        r2 = read_factory("x", paired=True, read2=True)
        assert query_name_key(r1) < query_name_key(r2)

    def test_primary_before_secondary_before_supplementary(self, read_factory):
        primary = read_factory("x", read1=True)
        secondary = read_factory("x", read1=True, secondary=True)
        supplementary = read_factory("x", read1=True, supplementary=True)
        assert query_name_key(primary) < query_name_key(secondary) < query_name_key(supplementary)


class TestSortingCollection:
    """Test buffering, spilling and merging."""

    def test_in_memory_only(self, header, shuffled_reads, temp_dir):
        with SortingCollection(header, max_records_in_ram=1000, tmp_dir=str(temp_dir)) as sorter:
            for aln in shuffled_reads:
                sorter.add(aln)
            assert sorter.num_spilled_runs == 0
            assert sorter.num_runs == 1
            out = list(sorter.finish())

        assert len(out) == len(shuffled_reads)
        assert _names(out) == sorted(_names(shuffled_reads))
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.parametrize("capacity", [1, 3, 7, 40])
    def test_sort_totality_with_spills(self, header, shuffled_reads, temp_dir, capacity):
        with SortingCollection(header, max_records_in_ram=capacity, tmp_dir=str(temp_dir)) as sorter:
            for aln in shuffled_reads:
                sorter.add(aln)
            out = list(sorter.finish())

        assert len(out) == len(shuffled_reads)
        keys = [query_name_key(aln) for aln in out]
        for left, right in zip(keys, keys[1:]):
            assert left <= right
        # Mates end up adjacent, read 1 first
        for first, second in zip(out[::2], out[1::2]):
            assert first.query_name == second.query_name
            assert first.is_read1 and second.is_read2

    @pytest.mark.parametrize("n_records,capacity", [(10, 3), (9, 3), (40, 7), (5, 5)])
    def test_bounded_buffer_and_run_count(self, read_factory, header, temp_dir, n_records, capacity):
        with SortingCollection(header, max_records_in_ram=capacity, tmp_dir=str(temp_dir)) as sorter:
            for i in range(n_records):
                sorter.add(read_factory(f"r{n_records - i:04d}"))
                assert sorter.max_buffered <= capacity
            assert sorter.num_runs == math.ceil(n_records / capacity)
            assert sorter.num_spilled_runs == n_records // capacity
            assert sorter.num_records == n_records
            out = list(sorter.finish())
        assert _names(out) == sorted(_names(out))

    def test_spill_files_removed_when_consumed(self, header, shuffled_reads, temp_dir):
        with SortingCollection(header, max_records_in_ram=8, tmp_dir=str(temp_dir)) as sorter:
            for aln in shuffled_reads:
                sorter.add(aln)
            spill_dir = next(temp_dir.iterdir())
            assert len(list(spill_dir.glob("*.bam"))) == 5
            list(sorter.finish())
            assert list(spill_dir.glob("*.bam")) == []
        assert not spill_dir.exists()

    def test_cleanup_on_failure(self, header, shuffled_reads, temp_dir):
        with pytest.raises(RuntimeError, match="boom"):  # noqa: PT012
            with SortingCollection(header, max_records_in_ram=4, tmp_dir=str(temp_dir)) as sorter:
                for aln in shuffled_reads:
                    sorter.add(aln)
                msg = "boom"
                raise RuntimeError(msg)
        assert list(temp_dir.iterdir()) == []

    def test_add_after_finish(self, header, read_factory):
        with SortingCollection(header, max_records_in_ram=2) as sorter:
            sorter.add(read_factory("a"))
            sorter.finish()
            with pytest.raises(RuntimeError, match="after finish"):
                sorter.add(read_factory("b"))

    def test_finish_twice(self, header):
        with SortingCollection(header, max_records_in_ram=2) as sorter:
            sorter.finish()
            with pytest.raises(RuntimeError, match="already called"):
                sorter.finish()

    def test_empty(self, header):
        with SortingCollection(header, max_records_in_ram=2) as sorter:
            assert list(sorter.finish()) == []

    def test_records_survive_spilling(self, header, read_factory, temp_dir):
        aln = read_factory("z", 1, 42, [(4, 2), (0, 10), (1, 1), (0, 7)], paired=True, read1=True, mate_cigar="20M")
        aln.set_tag("OQ", "I" * 20)
        with SortingCollection(header, max_records_in_ram=1, tmp_dir=str(temp_dir)) as sorter:
            sorter.add(aln)
            sorter.add(read_factory("a"))
            out = list(sorter.finish())

        spilled = out[1]
        assert spilled.query_name == "z"
        assert spilled.reference_id == 1
        assert spilled.reference_start == 42
        assert spilled.cigarstring == "2S10M1I7M"
        assert spilled.get_tag("MC") == "20M"
        assert spilled.get_tag("OQ") == "I" * 20

    def test_coordinate_key(self, header, read_factory):
        reads = [
            read_factory("u", unmapped=True),
            read_factory("c", 1, 5),
            read_factory("b", 0, 500),
            read_factory("a", 0, 20),
        ]
        with SortingCollection(header, max_records_in_ram=2, key=coordinate_key) as sorter:
            for aln in reads:
                sorter.add(aln)
            assert _names(sorter.finish()) == ["a", "b", "c", "u"]
