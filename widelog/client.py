# FILE: widelog/client.py
from __future__ import annotations

import atexit
import copy
from typing import Any, Callable, Dict, Mapping, Optional, Union

import httpx

from .drain import BatchingDrain
from .metrics import WidelogMetrics
from .sinks import HttpIngestTransport
from .utils import deep_merge, ts_iso


class ClientLogger:
    """
    Accumulate-then-send logger for callers outside a request scope
    (CLIs, workers, desktop clients).

    Each call builds `{timestamp, level, ...}` and queues it; batches are
    POSTed as JSON arrays to a widelog ingest endpoint. Call `flush()`
    before exit to force delivery.

        client = ClientLogger("https://app.example.com/_widelog/ingest",
                              headers={"Origin": "https://app.example.com"})
        client.info("checkout", "button clicked")
        client.flush()
    """

    def __init__(
        self,
        endpoint: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = 5.0,
        batch_size: int = 25,
        interval: float = 2.0,
        max_attempts: int = 2,
        flush_at_exit: bool = True,
        metrics: Optional[WidelogMetrics] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.transport = HttpIngestTransport(endpoint, headers=headers, timeout=timeout, transport=transport)
        kw: Dict[str, Any] = {}
        if sleep is not None:
            kw["sleep"] = sleep
        self.pipeline = BatchingDrain(
            self.transport,
            batch_size=batch_size,
            interval=interval,
            max_attempts=max_attempts,
            metrics=metrics,
            name="client",
            **kw,
        )
        self._identity: Dict[str, Any] = {}
        self._closed = False
        if flush_at_exit:
            atexit.register(self.close)

    def log(self, level: str, tag_or_event: Union[str, Mapping[str, Any]], message: Optional[str] = None) -> Dict[str, Any]:
        event: Dict[str, Any] = {"timestamp": ts_iso(), "level": level}
        deep_merge(event, self._identity)
        if isinstance(tag_or_event, Mapping):
            deep_merge(event, tag_or_event)
            event["level"] = level
        else:
            event["tag"] = str(tag_or_event)
            if message is not None:
                event["message"] = message
        self.pipeline.push(event)
        return event

    def set_identity(self, fields: Mapping[str, Any]) -> None:
        """Fields merged into every later event; replaces any previous identity."""
        self._identity = copy.deepcopy(dict(fields))

    def clear_identity(self) -> None:
        self._identity = {}

    def info(self, tag_or_event: Union[str, Mapping[str, Any]], message: Optional[str] = None) -> Dict[str, Any]:
        return self.log("info", tag_or_event, message)

    def warn(self, tag_or_event: Union[str, Mapping[str, Any]], message: Optional[str] = None) -> Dict[str, Any]:
        return self.log("warn", tag_or_event, message)

    def error(self, tag_or_event: Union[str, Mapping[str, Any]], message: Optional[str] = None) -> Dict[str, Any]:
        return self.log("error", tag_or_event, message)

    def debug(self, tag_or_event: Union[str, Mapping[str, Any]], message: Optional[str] = None) -> Dict[str, Any]:
        return self.log("debug", tag_or_event, message)

    @property
    def pending(self) -> int:
        return self.pipeline.pending

    def flush(self) -> None:
        self.pipeline.flush()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.pipeline.close()
        self.transport.close()
        atexit.unregister(self.close)
