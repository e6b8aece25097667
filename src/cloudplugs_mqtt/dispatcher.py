"""
Inbound message routing.

Every delivery from the session goes through MessageDispatcher.dispatch():
a reply to a pending correlated request is consumed by the correlator;
anything else goes, unchanged, to the single registered MessageSink.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class MessageSink(Protocol):
    """
    Application observer for messages not claimed by a pending request.
    May also define on_connection_lost(error) to hear about a dropped session.
    """

    def on_message(self, topic: str, payload: bytes, retained: bool) -> None:
        ...


class ReplyClaimer(Protocol):
    def claim(self, topic: str, payload: bytes) -> bool:
        ...


class MessageDispatcher:
    """
    Sink calls run on one worker thread, in arrival order, so a slow sink
    never stalls the network thread or reply correlation.
    """

    def __init__(self, correlator: ReplyClaimer, sink: Optional[MessageSink] = None) -> None:
        self._correlator = correlator
        self._sink_lock = threading.Lock()
        self._sink = sink
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cloudplugs-sink")

    @property
    def sink(self) -> Optional[MessageSink]:
        with self._sink_lock:
            return self._sink

    @sink.setter
    def sink(self, sink: Optional[MessageSink]) -> None:
        if sink is not None and not callable(getattr(sink, "on_message", None)):
            raise TypeError("sink must define on_message(topic, payload, retained)")
        with self._sink_lock:
            previous, self._sink = self._sink, sink
        if previous is not sink:
            logger.debug("Message sink replaced: %r -> %r", previous, sink)

    def dispatch(self, topic: str, payload: bytes, retained: bool) -> None:
        if self._correlator.claim(topic, payload):
            return
        sink = self.sink
        if sink is None:
            logger.debug("No sink registered; dropping message on %s", topic)
            return
        self._executor.submit(self._deliver, sink, topic, payload, retained)

    def notify_connection_lost(self, error: BaseException) -> None:
        sink = self.sink
        callback = getattr(sink, "on_connection_lost", None)
        if callable(callback):
            self._executor.submit(self._notify, callback, error)

    @staticmethod
    def _deliver(sink: MessageSink, topic: str, payload: bytes, retained: bool) -> None:
        try:
            sink.on_message(topic, payload, retained)
        except Exception:
            logger.exception("Message sink failed for topic=%s", topic)

    @staticmethod
    def _notify(callback, error: BaseException) -> None:
        try:
            callback(error)
        except Exception:
            logger.exception("on_connection_lost callback failed")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
