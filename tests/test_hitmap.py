"""Tests for hit map creation, merging and coverage.py export."""

import json

import pytest
from coverage import CoverageData

from isolate_coverage.hitmap import (
    create_hitmap,
    merge_hitmaps,
    parse_coverage,
    source_path,
    write_coverage_data,
)


def _entry(source, hits):
    return {"source": source, "script": {"uri": source}, "hits": hits}


class TestCreateHitmap:
    def test_sums_entries_for_same_source(self):
        coverage = [
            _entry("file:///a.dart", [1, 1, 2, 0, 3, 2]),
            _entry("file:///b.dart", [7, 1]),
            _entry("file:///a.dart", [2, 1, 3, 1, 4, 0]),
        ]
        assert create_hitmap(coverage) == {
            "file:///a.dart": {1: 1, 2: 1, 3: 3, 4: 0},
            "file:///b.dart": {7: 1},
        }

    def test_line_ranges(self):
        coverage = [_entry("file:///a.dart", ["3-5", 2, 4, 1])]
        assert create_hitmap(coverage) == {"file:///a.dart": {3: 2, 4: 3, 5: 2}}

    def test_entries_without_source_are_skipped(self):
        assert create_hitmap([{"hits": [1, 1]}]) == {}

    def test_missing_hits(self):
        assert create_hitmap([{"source": "file:///a.dart"}]) == {"file:///a.dart": {}}

    def test_odd_length_hits(self):
        with pytest.raises(ValueError, match="odd number"):
            create_hitmap([{"source": "file:///a.dart", "hits": [1, 1, 2]}])


def test_merge_hitmaps_adds_counts():
    into = {"a": {1: 1, 2: 0}}
    result = merge_hitmaps({"a": {2: 3, 3: 0}, "b": {1: 1}}, into)
    assert result is into
    assert into == {"a": {1: 1, 2: 3, 3: 0}, "b": {1: 1}}


class TestParseCoverage:
    def test_merges_files(self, tmp_path):
        first = tmp_path / "first.json"
        first.write_text(
            json.dumps({"type": "CodeCoverage", "coverage": [_entry("file:///a.dart", [1, 1, 2, 0])]})
        )
        second = tmp_path / "second.json"
        second.write_text(
            json.dumps({"type": "CodeCoverage", "coverage": [_entry("file:///a.dart", [2, 2])]})
        )

        assert parse_coverage([str(first), str(second)]) == {"file:///a.dart": {1: 1, 2: 2}}

    def test_accepts_bare_entry_list(self, tmp_path):
        path = tmp_path / "entries.json"
        path.write_text(json.dumps([_entry("file:///a.dart", [5, 1])]))
        assert parse_coverage([str(path)]) == {"file:///a.dart": {5: 1}}

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        with pytest.raises(json.JSONDecodeError):
            parse_coverage([str(path)])


class TestCoverageDataExport:
    def test_source_path(self, tmp_path):
        local = tmp_path / "a b.py"
        assert source_path(local.as_uri()) == str(local)
        assert source_path("package:foo/foo.dart") is None
        assert source_path("dart:core") is None

    def test_writes_executed_lines_of_local_files(self, tmp_path):
        executed = tmp_path / "main.py"
        never_run = tmp_path / "unused.py"
        data_file = tmp_path / ".coverage"
        hit_maps = {
            executed.as_uri(): {1: 2, 2: 0, 3: 1},
            never_run.as_uri(): {4: 0},
            "package:foo/foo.dart": {1: 1},
        }

        assert write_coverage_data(hit_maps, str(data_file)) == 1

        data = CoverageData(basename=str(data_file))
        data.read()
        assert data.measured_files() == {str(executed)}
        assert sorted(data.lines(str(executed))) == [1, 3]
