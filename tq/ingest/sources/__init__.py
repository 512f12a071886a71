from tq.ingest.sources.base import BaseUsageSource
from tq.ingest.sources.file_replay import FileReplaySource

__all__ = ["BaseUsageSource", "FileReplaySource"]
