from tq.signals.sinks.base import SignalSink
from tq.signals.sinks.stdout_sink import StdoutSink
from tq.signals.sinks.file_sink import FileSink
from tq.signals.sinks.webhook_sink import WebhookSink

__all__ = ["SignalSink", "StdoutSink", "FileSink", "WebhookSink"]
