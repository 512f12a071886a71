"""
Usage feed ingest: source registry and adapters.
Use get_source(name) to obtain a source of cumulative per-(user, node) byte counters.
"""
from tq.ingest.sources.base import BaseUsageSource
from tq.ingest.sources.file_replay import FileReplaySource

_SOURCES = {
    "file_replay": FileReplaySource,
}


def get_source(name: str, **kwargs) -> BaseUsageSource:
    """Return a usage source instance. name: file_replay."""
    if name not in _SOURCES:
        raise ValueError(f"unknown usage source: {name}. Available: {list(_SOURCES)}")
    return _SOURCES[name](**kwargs)
