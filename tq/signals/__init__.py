"""Signal sinks: deliver enforcement signals to the data-plane controller (stdout, file, webhook)."""
from tq.signals.sinks.base import SignalSink
from tq.signals.sinks.stdout_sink import StdoutSink
from tq.signals.sinks.file_sink import FileSink
from tq.signals.sinks.webhook_sink import WebhookSink
from tq.signals.dispatcher import SignalDispatcher

__all__ = ["SignalSink", "StdoutSink", "FileSink", "WebhookSink", "SignalDispatcher", "get_sinks"]


def get_sinks(names: list[str], **kwargs) -> list[SignalSink]:
    """Resolve sink names to instances. names: ['stdout', 'file', 'webhook']."""
    registry = {"stdout": StdoutSink, "file": FileSink, "webhook": WebhookSink}
    out = []
    for name in names:
        name = (name or "").strip().lower()
        if name not in registry:
            continue
        out.append(registry[name](**kwargs))
    return out
