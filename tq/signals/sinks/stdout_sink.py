import json
from tq.signals.sinks.base import SignalSink


class StdoutSink(SignalSink):
    name = "stdout"

    def __init__(self, **kwargs):
        pass

    def emit(self, signal):
        print("TQ_SIGNAL", json.dumps(signal, sort_keys=True))
