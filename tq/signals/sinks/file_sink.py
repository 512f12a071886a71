import json
import os
from tq.signals.sinks.base import SignalSink


class FileSink(SignalSink):
    name = "file"

    def __init__(self, path: str = "signals.jsonl", **kwargs):
        self.path = path

    def emit(self, signal):
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        with open(self.path, "a") as f:
            f.write(json.dumps(signal, sort_keys=True) + "\n")
