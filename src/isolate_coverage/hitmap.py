# Host-side handling of collected coverage.
# Turns CodeCoverage envelopes into hit maps, merges them across runs,
# and records executed lines into a coverage.py data file.

import json
import logging
from urllib.parse import urlsplit
from urllib.request import url2pathname

from coverage import CoverageData

logger = logging.getLogger(__name__)


def _add_hits(hit_map, line, count):
    hit_map[line] = hit_map.get(line, 0) + count


def create_hitmap(coverage):
    """Build a hit map from a list of script coverage entries.

    ``hits`` in each entry is a flat ``[line, count, ...]`` list where a line
    may also be a ``"<start>-<end>"`` range applying the count to every line
    in it. Entries for the same source are summed.

    Raises:
        ValueError: A ``hits`` list has an odd number of elements.

    Returns:
        Dict {source_uri: {line: count}}.
    """
    hit_maps = {}
    for entry in coverage:
        source = entry.get("source")
        if source is None:
            continue

        hit_map = hit_maps.setdefault(source, {})
        hits = entry.get("hits") or []
        if len(hits) % 2:
            raise ValueError(f"hits for {source} has an odd number of elements")
        for i in range(0, len(hits), 2):
            key, count = hits[i], hits[i + 1]
            if isinstance(key, int):
                _add_hits(hit_map, key, count)
            else:
                start, end = (int(part) for part in key.split("-"))
                for line in range(start, end + 1):
                    _add_hits(hit_map, line, count)
    return hit_maps


def merge_hitmaps(new_map, into):
    """Add the counts of ``new_map`` into ``into`` and return ``into``."""
    for source, hit_map in new_map.items():
        target = into.setdefault(source, {})
        for line, count in hit_map.items():
            _add_hits(target, line, count)
    return into


def _load_coverage(path):
    """Load the coverage entry list from a collected JSON file."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        return data.get("coverage", [])
    return data


def parse_coverage(json_files):
    """Merge collected coverage JSON files into a single hit map.

    Args:
        json_files: Paths of files holding CodeCoverage envelopes.

    Returns:
        Dict {source_uri: {line: count}} with counts summed across files.
    """
    merged = {}
    for path in json_files:
        merge_hitmaps(create_hitmap(_load_coverage(path)), merged)
    return merged


def source_path(source_uri):
    """Return the local file path of a ``file:`` URI, or None."""
    parts = urlsplit(source_uri)
    if parts.scheme != "file":
        return None
    return url2pathname(parts.path)


def write_coverage_data(hit_maps, data_file):
    """Record executed lines of local sources into a coverage.py data file.

    Only ``file:`` sources are recorded; package and SDK URIs have no path
    coverage.py could report on. Lines with a count of 0 are not executed
    and are left out.

    Returns the number of files recorded.
    """
    line_data = {}
    for source, hit_map in hit_maps.items():
        path = source_path(source)
        if path is None:
            logger.debug("Skipping non-file source %s", source)
            continue
        executed = {line for line, count in hit_map.items() if count > 0}
        if executed:
            line_data[path] = executed

    data = CoverageData(basename=data_file)
    data.add_lines(line_data)
    data.write()
    return len(line_data)
