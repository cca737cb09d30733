"""Line coverage collection from a running VM's service protocol."""

from isolate_coverage._version import __version__  # noqa: F401


def __getattr__(name):
    if name == "collect":
        from isolate_coverage.collect import collect

        return collect
    if name in ("create_hitmap", "merge_hitmaps", "parse_coverage"):
        from isolate_coverage import hitmap

        return getattr(hitmap, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["collect", "create_hitmap", "merge_hitmaps", "parse_coverage", "__version__"]
