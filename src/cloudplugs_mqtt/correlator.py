"""
Request/response over MQTT pub/sub.

Property get/set and enrollment are correlated exchanges:
1. register a PendingRequest under its correlation id,
2. subscribe the reply topic (shared and reference-counted between siblings),
3. publish the request once the subscription is acknowledged,
4. resolve exactly once: matching reply, deadline, send failure, caller
   cancel or session end, whichever comes first.

Property requests use random correlation ids. Enrollment is keyed by hardware
id (one enrollment per hardware id at a time) and carries a random nonce so a
late reply for an earlier attempt never completes a newer one.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import Counter, OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from cloudplugs_mqtt import envelopes
from cloudplugs_mqtt.envelopes import (
    EnrollRequest,
    PropertyGetRequest,
    PropertySetRequest,
    Reply,
)
from cloudplugs_mqtt.errors import AlreadyEnrollingError, BrokerConnectionError, RequestTimeoutError
from cloudplugs_mqtt.futures import chain, completed, settle
from cloudplugs_mqtt.mqtt_topics import TopicSchema, validate_identity

logger = logging.getLogger(__name__)

# finished (reply topic, correlation id) pairs kept to recognise late replies
_FINISHED_MAX = 1024


class Transport(Protocol):
    """The slice of Connection the correlator needs."""

    def publish(self, topic: str, payload: bytes, qos: int, *, retain: bool = False) -> Future:
        ...

    def subscribe(self, topic: str, qos: int) -> Future:
        ...

    def unsubscribe(self, topic: str) -> Future:
        ...


class RequestKind(str, Enum):
    GET_PROPERTY = "get_property"
    SET_PROPERTY = "set_property"
    ENROLL = "enroll"
    ENROLL_CTRL = "enroll_ctrl"


_DECODERS: dict[RequestKind, Callable[[Reply], Any]] = {
    RequestKind.GET_PROPERTY: envelopes.property_value,
    RequestKind.SET_PROPERTY: envelopes.property_set_ack,
    RequestKind.ENROLL: envelopes.enroll_result,
    RequestKind.ENROLL_CTRL: envelopes.enroll_result,
}


@dataclass(eq=False)
class PendingRequest:
    correlation_id: str
    kind: RequestKind
    response_topic: str
    future: Future
    deadline: float
    nonce: Optional[str] = None
    timer: Optional[threading.Timer] = field(default=None, repr=False)


class DuplicateRequestError(KeyError):
    """A request with this correlation id is already pending."""


@dataclass
class _TopicRef:
    count: int
    ready: Future  # resolves when the reply subscription is acknowledged


class RequestTable:
    """
    Pending requests by correlation id plus reference counts of their reply
    topics. Every mutation happens under one lock; pop/claim are the only way
    to take an entry out, so each entry is finished by exactly one caller.

    The ids of recently finished requests are remembered per reply topic so a
    late reply for one of them can be recognised and dropped.
    """

    def __init__(self, finished_max: int = _FINISHED_MAX) -> None:
        self._lock = threading.Lock()
        self._pending: dict[str, PendingRequest] = {}
        self._topics: dict[str, _TopicRef] = {}
        self._finished: OrderedDict[tuple[str, str], None] = OrderedDict()
        self._finished_topics: Counter[str] = Counter()
        self._finished_max = finished_max

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, correlation_id: object) -> bool:
        with self._lock:
            return correlation_id in self._pending

    def is_pending(self, req: PendingRequest) -> bool:
        """True while req itself (not a newer request with its id) is registered."""
        with self._lock:
            return self._pending.get(req.correlation_id) is req

    def add(self, req: PendingRequest) -> tuple[Future, bool]:
        """
        Register req. Returns (reply subscription future, is_new_topic).
        When is_new_topic is True the caller must subscribe and resolve the future.
        """
        with self._lock:
            if req.correlation_id in self._pending:
                raise DuplicateRequestError(req.correlation_id)
            self._pending[req.correlation_id] = req
            ref = self._topics.get(req.response_topic)
            if ref is not None:
                ref.count += 1
                return ref.ready, False
            ref = _TopicRef(count=1, ready=Future())
            self._topics[req.response_topic] = ref
            return ref.ready, True

    def _remember_locked(self, req: PendingRequest) -> None:
        key = (req.response_topic, req.correlation_id)
        if key in self._finished:
            self._finished.move_to_end(key)
            return
        self._finished[key] = None
        self._finished_topics[req.response_topic] += 1
        while len(self._finished) > self._finished_max:
            (topic, _), _ = self._finished.popitem(last=False)
            self._finished_topics[topic] -= 1
            if not self._finished_topics[topic]:
                del self._finished_topics[topic]

    def _remove_locked(self, req: PendingRequest) -> bool:
        del self._pending[req.correlation_id]
        self._remember_locked(req)
        ref = self._topics[req.response_topic]
        ref.count -= 1
        if ref.count == 0:
            del self._topics[req.response_topic]
            return True
        return False

    def pop(self, req: PendingRequest) -> Optional[bool]:
        """
        Remove req if it is still the registered entry for its id.
        Returns None if it was already finished, else whether its reply topic
        is now unreferenced.
        """
        with self._lock:
            if self._pending.get(req.correlation_id) is not req:
                return None
            return self._remove_locked(req)

    def claim(self, topic: str, reply: Reply) -> Optional[tuple[PendingRequest, bool]]:
        """Take the entry a reply on topic belongs to, if any."""
        with self._lock:
            req = self._pending.get(reply.id)
            if req is None or req.response_topic != topic:
                return None
            if req.nonce is not None and reply.nonce is not None and reply.nonce != req.nonce:
                return None
            return req, self._remove_locked(req)

    def is_stale(self, topic: str, reply: Reply) -> bool:
        """
        True for a reply to a request that already finished, or to an earlier
        attempt of a pending one (same id, other nonce).
        """
        with self._lock:
            req = self._pending.get(reply.id)
            if req is not None and req.response_topic == topic:
                return req.nonce is not None and reply.nonce is not None and reply.nonce != req.nonce
            return (topic, reply.id) in self._finished

    def has_topic(self, topic: str) -> bool:
        with self._lock:
            return topic in self._topics

    def watches(self, topic: str) -> bool:
        """Whether topic may carry a reply: pending or recently finished requests use it."""
        with self._lock:
            return topic in self._topics or topic in self._finished_topics

    def drain(self) -> tuple[list[PendingRequest], list[str]]:
        """Remove everything. Returns the entries and their reply topics."""
        with self._lock:
            reqs = list(self._pending.values())
            topics = list(self._topics)
            for req in reqs:
                self._remember_locked(req)
            self._pending.clear()
            self._topics.clear()
            return reqs, topics


class RequestCorrelator:
    """
    Issues correlated requests through a transport and matches replies
    handed over by the dispatcher (claim()).

    keep_subscribed(topic) tells the correlator not to unsubscribe a reply
    topic the application itself subscribed to.
    """

    def __init__(
        self,
        transport: Transport,
        topics: TopicSchema,
        *,
        qos: int = 1,
        timeout_s: float = 30.0,
        keep_subscribed: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.transport = transport
        self.topics = topics
        self.qos = qos
        self.timeout_s = timeout_s
        self._keep_subscribed = keep_subscribed or (lambda topic: False)
        self.table = RequestTable()
        # serializes reply-topic subscribe vs unsubscribe so a release never
        # tears down a subscription a newer sibling just took
        self._sub_lock = threading.RLock()

    @property
    def pending_count(self) -> int:
        return len(self.table)

    # -------------------------
    # Operations
    # -------------------------
    def get_property(self, key: str, plug_id: Optional[str] = None) -> Future:
        """Resolve to the property value of plug_id (own plug when None)."""
        validate_identity(key, "property key")
        request_topic = self.topics.property_get(plug_id)
        reply_topic = self.topics.property_reply(plug_id)
        return self._request_with_random_id(
            RequestKind.GET_PROPERTY,
            request_topic,
            reply_topic,
            lambda cid: PropertyGetRequest(id=cid, key=key).to_bytes(),
        )

    def set_property(self, key: str, value: Any, plug_id: Optional[str] = None) -> Future:
        """Resolve to None once the platform acknowledged the new value."""
        validate_identity(key, "property key")
        request_topic = self.topics.property_set(plug_id)
        reply_topic = self.topics.property_reply(plug_id)
        return self._request_with_random_id(
            RequestKind.SET_PROPERTY,
            request_topic,
            reply_topic,
            lambda cid: PropertySetRequest(id=cid, key=key, value=value).to_bytes(),
        )

    def enroll(self, hwid: str, model_id: str, password: str) -> Future:
        """Enroll a production device; resolves to EnrollResult(plug_id, auth)."""
        request_topic = TopicSchema.enroll(hwid)
        reply_topic = TopicSchema.enroll_reply(hwid)
        validate_identity(model_id, "model_id")
        nonce = uuid.uuid4().hex
        payload = EnrollRequest(hwid=hwid, nonce=nonce, model_id=model_id, password=password).to_bytes()
        return self.request(RequestKind.ENROLL, hwid, request_topic, reply_topic, payload, nonce=nonce)

    def enroll_ctrl(self, hwid: str, model_id: str, ctrl_hwid: str, password: str) -> Future:
        """Enroll ctrl_hwid as a controller of the thing hwid; resolves to EnrollResult."""
        request_topic = TopicSchema.enroll_ctrl(hwid)
        reply_topic = TopicSchema.enroll_reply(hwid)
        validate_identity(model_id, "model_id")
        validate_identity(ctrl_hwid, "ctrl_hwid")
        nonce = uuid.uuid4().hex
        payload = EnrollRequest(
            hwid=hwid, nonce=nonce, model_id=model_id, password=password, ctrl_hwid=ctrl_hwid
        ).to_bytes()
        return self.request(RequestKind.ENROLL_CTRL, hwid, request_topic, reply_topic, payload, nonce=nonce)

    def _request_with_random_id(
        self,
        kind: RequestKind,
        request_topic: str,
        reply_topic: str,
        build: Callable[[str], bytes],
    ) -> Future:
        while True:
            cid = uuid.uuid4().hex
            try:
                return self.request(kind, cid, request_topic, reply_topic, build(cid))
            except DuplicateRequestError:
                continue

    def request(
        self,
        kind: RequestKind,
        correlation_id: str,
        request_topic: str,
        reply_topic: str,
        payload: bytes,
        *,
        nonce: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> Future:
        """
        Run one correlated exchange. Raises AlreadyEnrollingError (enrollment)
        or DuplicateRequestError if correlation_id is already pending.
        """
        timeout = self.timeout_s if timeout_s is None else timeout_s
        future: Future = Future()
        req = PendingRequest(
            correlation_id=correlation_id,
            kind=kind,
            response_topic=reply_topic,
            future=future,
            deadline=time.monotonic() + timeout,
            nonce=nonce,
        )

        with self._sub_lock:
            try:
                ready, is_new = self.table.add(req)
            except DuplicateRequestError:
                if kind in (RequestKind.ENROLL, RequestKind.ENROLL_CTRL):
                    raise AlreadyEnrollingError(f"Enrollment already in progress for {correlation_id}") from None
                raise
            logger.debug("Pending %s id=%s reply_topic=%s", kind.value, correlation_id, reply_topic)

            req.timer = threading.Timer(max(0.0, req.deadline - time.monotonic()), self._expire, args=(req,))
            req.timer.daemon = True
            req.timer.start()
            future.add_done_callback(lambda f: self._on_caller_done(req, f))

            if is_new:
                chain(self.transport.subscribe(reply_topic, self.qos), ready)

        ready.add_done_callback(lambda f: self._send(req, request_topic, payload, f))
        return future

    def _send(self, req: PendingRequest, topic: str, payload: bytes, ready: Future) -> None:
        if not self.table.is_pending(req):
            return
        if ready.cancelled():
            self._finish(req, error=BrokerConnectionError("Reply subscription cancelled"))
            return
        exc = ready.exception()
        if exc is not None:
            logger.warning("Reply subscription for %s failed: %s", req.response_topic, exc)
            self._finish(req, error=exc)
            return
        sent = self.transport.publish(topic, payload, self.qos)
        sent.add_done_callback(lambda f: self._on_sent(req, f))

    def _on_sent(self, req: PendingRequest, sent: Future) -> None:
        exc = sent.exception() if not sent.cancelled() else None
        if exc is not None:
            logger.warning("%s id=%s: request publish failed: %s", req.kind.value, req.correlation_id, exc)
            self._finish(req, error=exc)

    def _expire(self, req: PendingRequest) -> None:
        err = RequestTimeoutError(f"No reply to {req.kind.value} id={req.correlation_id} within deadline")
        if self._finish(req, error=err):
            logger.warning("%s id=%s timed out", req.kind.value, req.correlation_id)

    def _on_caller_done(self, req: PendingRequest, future: Future) -> None:
        if future.cancelled():
            if self._finish(req):
                logger.debug("%s id=%s cancelled by caller", req.kind.value, req.correlation_id)

    def _finish(self, req: PendingRequest, result: Any = None, error: Optional[BaseException] = None) -> bool:
        """Single terminal transition. Returns False if req was already finished."""
        released = self.table.pop(req)
        if released is None:
            return False
        self._cleanup(req, released)
        settle(req.future, result, error)
        return True

    def _cleanup(self, req: PendingRequest, released: bool) -> None:
        if req.timer is not None:
            req.timer.cancel()
        if released:
            self._release_topic(req.response_topic)

    def _release_topic(self, topic: str) -> None:
        with self._sub_lock:
            if self.table.has_topic(topic) or self._keep_subscribed(topic):
                return
            logger.debug("Releasing reply subscription %s", topic)
            done = self.transport.unsubscribe(topic)
        done.add_done_callback(lambda f: self._log_unsubscribe(topic, f))

    def unsubscribe_unless_pending(self, topic: str) -> Future:
        """
        Unsubscribe topic on behalf of the application. While pending requests
        still wait for replies on it, the subscription is left to them and is
        released when the last one finishes.
        """
        with self._sub_lock:
            if self.table.has_topic(topic):
                logger.debug("Keeping %s until its pending requests finish", topic)
                return completed()
            return self.transport.unsubscribe(topic)

    @staticmethod
    def _log_unsubscribe(topic: str, f: Future) -> None:
        exc = f.exception() if not f.cancelled() else None
        if exc is not None:
            logger.debug("Unsubscribe %s failed: %s", topic, exc)

    # -------------------------
    # Inbound
    # -------------------------
    def claim(self, topic: str, payload: bytes) -> bool:
        """
        Called by the dispatcher for each inbound message. Returns True if the
        message was a reply to a pending request, or a late reply to a finished
        one; either way it is consumed.
        """
        if not self.table.watches(topic):
            return False
        reply = Reply.parse(payload)
        if reply is None:
            return False
        claimed = self.table.claim(topic, reply)
        if claimed is None:
            if self.table.is_stale(topic, reply):
                logger.debug("Dropping late reply on %s for id=%s", topic, reply.id)
                return True
            logger.debug("Reply on %s for unknown id=%s", topic, reply.id)
            return False
        req, released = claimed
        self._cleanup(req, released)
        try:
            value = _DECODERS[req.kind](reply)
        except Exception as exc:
            logger.warning("%s id=%s failed: %s", req.kind.value, req.correlation_id, exc)
            settle(req.future, error=exc)
        else:
            logger.debug("%s id=%s completed", req.kind.value, req.correlation_id)
            settle(req.future, value)
        return True

    def fail_all(self, error: BaseException) -> int:
        """Fail every pending request (session ended). Returns how many were failed."""
        reqs, _ = self.table.drain()
        for req in reqs:
            if req.timer is not None:
                req.timer.cancel()
            settle(req.future, error=error)
        if reqs:
            logger.warning("Failed %d pending request(s): %s", len(reqs), error)
        return len(reqs)
