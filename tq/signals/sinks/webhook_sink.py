import json
import urllib.request
from tq.signals.sinks.base import SignalSink


class WebhookSink(SignalSink):
    """POST each signal as JSON. Delivery errors propagate to the dispatcher."""
    name = "webhook"

    def __init__(self, url: str, timeout_sec: float = 5.0, **kwargs):
        self.url = url
        self.timeout_sec = timeout_sec

    def emit(self, signal):
        data = json.dumps(signal).encode("utf-8")
        req = urllib.request.Request(self.url, data=data, method="POST", headers={"Content-Type": "application/json"})
        with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
            resp.read()
