import json
import threading
from concurrent.futures import Future

import pytest

from cloudplugs_mqtt.correlator import RequestCorrelator, RequestTable
from cloudplugs_mqtt.envelopes import EnrollResult
from cloudplugs_mqtt.errors import (
    AlreadyEnrollingError,
    AuthError,
    BrokerConnectionError,
    PlatformError,
    ProtocolError,
    RequestTimeoutError,
    ValidationError,
)
from cloudplugs_mqtt.futures import completed, failed
from cloudplugs_mqtt.mqtt_topics import TopicSchema

pytestmark = pytest.mark.unit

REPLY = "plug-1/prop/reply"


class FakeTransport:
    """Records traffic; subscriptions are acknowledged at once unless hold_subacks is set."""

    def __init__(self):
        self.lock = threading.Lock()
        self.published = []
        self.subscribed = []
        self.unsubscribed = []
        self.hold_subacks = False
        self.pending_subacks = []
        self.subscribe_error = None
        self.publish_error = None

    def publish(self, topic, payload, qos, *, retain=False):
        with self.lock:
            self.published.append((topic, json.loads(payload), qos))
        if self.publish_error is not None:
            return failed(self.publish_error)
        return completed()

    def subscribe(self, topic, qos):
        with self.lock:
            self.subscribed.append((topic, qos))
        if self.subscribe_error is not None:
            return failed(self.subscribe_error)
        if self.hold_subacks:
            fut = Future()
            self.pending_subacks.append(fut)
            return fut
        return completed()

    def unsubscribe(self, topic):
        with self.lock:
            self.unsubscribed.append(topic)
        return completed()

    def requests_on(self, topic):
        return [payload for t, payload, _ in self.published if t == topic]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def correlator(transport):
    return RequestCorrelator(transport, TopicSchema("plug-1"), qos=1, timeout_s=5.0)


def _reply(correlator, topic, body):
    return correlator.claim(topic, json.dumps(body).encode("utf-8"))


def test_get_property_round_trip(correlator, transport):
    fut = correlator.get_property("color")

    assert transport.subscribed == [(REPLY, 1)]
    (req,) = transport.requests_on("plug-1/prop/get")
    assert req["key"] == "color"
    assert correlator.pending_count == 1

    assert _reply(correlator, REPLY, {"id": req["id"], "value": "red"}) is True

    assert fut.result(timeout=1) == "red"
    assert correlator.pending_count == 0
    assert transport.unsubscribed == [REPLY]


def test_request_waits_for_subscription_ack(correlator, transport):
    transport.hold_subacks = True

    fut = correlator.get_property("color")

    assert transport.published == []
    transport.pending_subacks[0].set_result(None)
    assert len(transport.requests_on("plug-1/prop/get")) == 1
    assert not fut.done()


def test_concurrent_requests_resolve_with_their_own_reply(correlator, transport):
    n = 20
    futures = {}
    start = threading.Barrier(n)

    def _issue(i):
        start.wait()
        futures[i] = correlator.get_property(f"key{i}")

    threads = [threading.Thread(target=_issue, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    requests = transport.requests_on("plug-1/prop/get")
    assert len(requests) == n
    assert len({r["id"] for r in requests}) == n
    # one shared reply subscription
    assert transport.subscribed == [(REPLY, 1)]

    for req in reversed(requests):
        assert _reply(correlator, REPLY, {"id": req["id"], "value": req["key"].upper()})

    for i, fut in futures.items():
        assert fut.result(timeout=1) == f"KEY{i}"
    assert transport.unsubscribed == [REPLY]


def test_set_then_get_share_reply_topic(correlator, transport):
    set_fut = correlator.set_property("color", "blue")
    get_fut = correlator.get_property("color")

    (set_req,) = transport.requests_on("plug-1/prop/set")
    (get_req,) = transport.requests_on("plug-1/prop/get")
    assert set_req["value"] == "blue"
    assert transport.subscribed == [(REPLY, 1)]

    # get answered first; set is still pending and keeps the subscription
    _reply(correlator, REPLY, {"id": get_req["id"], "value": "blue"})
    assert get_fut.result(timeout=1) == "blue"
    assert not set_fut.done()
    assert transport.unsubscribed == []

    _reply(correlator, REPLY, {"id": set_req["id"]})
    assert set_fut.result(timeout=1) is None
    assert transport.unsubscribed == [REPLY]


def test_timeout_resolves_once_and_late_reply_is_ignored(transport):
    correlator = RequestCorrelator(transport, TopicSchema("plug-1"), timeout_s=0.05)

    fut = correlator.get_property("color")
    (req,) = transport.requests_on("plug-1/prop/get")

    with pytest.raises(RequestTimeoutError):
        fut.result(timeout=2)
    assert correlator.pending_count == 0
    assert transport.unsubscribed == [REPLY]

    assert _reply(correlator, REPLY, {"id": req["id"], "value": "late"}) is True
    assert isinstance(fut.exception(), RequestTimeoutError)


def test_malformed_reply_is_protocol_error(correlator, transport):
    fut = correlator.get_property("color")
    (req,) = transport.requests_on("plug-1/prop/get")

    assert _reply(correlator, REPLY, {"id": req["id"]}) is True

    with pytest.raises(ProtocolError):
        fut.result(timeout=1)


def test_uncorrelatable_payload_is_not_claimed(correlator, transport):
    fut = correlator.get_property("color")

    assert correlator.claim(REPLY, b"garbage") is False
    assert _reply(correlator, REPLY, {"id": "someone-else", "value": 1}) is False
    assert _reply(correlator, "plug-1/data/t1", {"id": "x"}) is False
    assert not fut.done()


def test_error_replies(correlator, transport):
    denied = correlator.get_property("secret")
    missing = correlator.set_property("nope", 1)
    (get_req,) = transport.requests_on("plug-1/prop/get")
    (set_req,) = transport.requests_on("plug-1/prop/set")

    _reply(correlator, REPLY, {"id": get_req["id"], "error": "denied", "code": 401})
    _reply(correlator, REPLY, {"id": set_req["id"], "error": "unknown key", "code": 404})

    with pytest.raises(AuthError):
        denied.result(timeout=1)
    with pytest.raises(PlatformError) as exc:
        missing.result(timeout=1)
    assert exc.value.code == 404


def test_other_plug_topics(correlator, transport):
    correlator.get_property("color", plug_id="plug-2")

    assert transport.subscribed == [("plug-2/prop/reply", 1)]
    assert len(transport.requests_on("plug-2/prop/get")) == 1


def test_invalid_key_raises_before_traffic(correlator, transport):
    with pytest.raises(ValidationError):
        correlator.get_property("bad/key")
    assert transport.subscribed == [] and transport.published == []


def test_subscribe_failure_fails_request(correlator, transport):
    transport.subscribe_error = AuthError("Subscription refused")

    fut = correlator.get_property("color")

    with pytest.raises(AuthError):
        fut.result(timeout=1)
    assert transport.published == []
    assert correlator.pending_count == 0


def test_publish_failure_fails_request(correlator, transport):
    transport.publish_error = BrokerConnectionError("publish failed")

    fut = correlator.get_property("color")

    with pytest.raises(BrokerConnectionError):
        fut.result(timeout=1)
    assert correlator.pending_count == 0
    assert transport.unsubscribed == [REPLY]


def test_cancel_removes_request(correlator, transport):
    fut = correlator.get_property("color")
    (req,) = transport.requests_on("plug-1/prop/get")

    assert fut.cancel() is True

    assert correlator.pending_count == 0
    assert transport.unsubscribed == [REPLY]
    assert _reply(correlator, REPLY, {"id": req["id"], "value": 1}) is True


def test_late_reply_on_shared_topic_is_consumed(correlator, transport):
    cancelled = correlator.get_property("a")
    pending = correlator.get_property("b")
    req_a, req_b = transport.requests_on("plug-1/prop/get")
    cancelled.cancel()

    # b keeps the reply topic subscribed, so a late answer for a still arrives
    assert _reply(correlator, REPLY, {"id": req_a["id"], "value": "late"}) is True
    assert not pending.done()

    assert _reply(correlator, REPLY, {"id": req_b["id"], "value": "b"}) is True
    assert pending.result(timeout=1) == "b"


def test_finished_ids_are_forgotten_beyond_limit(transport):
    correlator = RequestCorrelator(transport, TopicSchema("plug-1"))
    correlator.table = RequestTable(finished_max=2)

    futs = [correlator.get_property(f"k{i}") for i in range(3)]
    ids = [r["id"] for r in transport.requests_on("plug-1/prop/get")]
    for fut in futs:
        fut.cancel()

    assert _reply(correlator, REPLY, {"id": ids[0], "value": 1}) is False
    assert _reply(correlator, REPLY, {"id": ids[2], "value": 1}) is True


def test_app_subscription_is_kept(transport):
    correlator = RequestCorrelator(transport, TopicSchema("plug-1"), keep_subscribed=lambda t: t == REPLY)

    fut = correlator.get_property("color")
    (req,) = transport.requests_on("plug-1/prop/get")
    _reply(correlator, REPLY, {"id": req["id"], "value": 1})

    assert fut.result(timeout=1) == 1
    assert transport.unsubscribed == []


def test_unsubscribe_unless_pending(correlator, transport):
    correlator.get_property("color")

    assert correlator.unsubscribe_unless_pending(REPLY).result(timeout=1) is None
    assert transport.unsubscribed == []

    assert correlator.unsubscribe_unless_pending("plug-1/data/t1").result(timeout=1) is None
    assert transport.unsubscribed == ["plug-1/data/t1"]


def test_fail_all(correlator, transport):
    futs = [correlator.get_property("a"), correlator.set_property("b", 2)]

    assert correlator.fail_all(BrokerConnectionError("Client disconnected")) == 2

    for fut in futs:
        with pytest.raises(BrokerConnectionError):
            fut.result(timeout=1)
    assert correlator.pending_count == 0


class TestEnrollment:
    """Enrollment requests are keyed by hardware id"""

    def test_enroll_round_trip(self, correlator, transport):
        fut = correlator.enroll("HW-1", "model-1", "pw")

        assert transport.subscribed == [("enroll/HW-1/reply", 1)]
        (req,) = transport.requests_on("enroll/HW-1/thing")
        assert req["id"] == "HW-1"
        assert req["model"] == "model-1"
        assert req["pass"] == "pw"

        _reply(correlator, "enroll/HW-1/reply", {"id": "HW-1", "nonce": req["nonce"], "plugid": "p9", "auth": "tok"})

        assert fut.result(timeout=1) == EnrollResult(plug_id="p9", auth="tok")

    def test_enroll_ctrl(self, correlator, transport):
        fut = correlator.enroll_ctrl("HW-1", "model-1", "CTRL-1", "ctrl-pw")

        (req,) = transport.requests_on("enroll/HW-1/ctrl")
        assert req["ctrl"] == "CTRL-1"

        _reply(correlator, "enroll/HW-1/reply", {"id": "HW-1", "plugid": "p-ctrl", "auth": "tok"})
        assert fut.result(timeout=1).plug_id == "p-ctrl"

    def test_second_enrollment_for_same_hwid_is_rejected(self, correlator, transport):
        correlator.enroll("HW-1", "model-1", "pw")

        with pytest.raises(AlreadyEnrollingError):
            correlator.enroll("HW-1", "model-1", "pw")

        # a different device is fine
        correlator.enroll("HW-2", "model-1", "pw")

    def test_stale_nonce_does_not_complete_newer_attempt(self, correlator, transport):
        first = correlator.enroll("HW-1", "model-1", "pw")
        first.cancel()
        second = correlator.enroll("HW-1", "model-1", "pw")
        old_nonce = transport.requests_on("enroll/HW-1/thing")[0]["nonce"]
        new_nonce = transport.requests_on("enroll/HW-1/thing")[1]["nonce"]

        stale = {"id": "HW-1", "nonce": old_nonce, "plugid": "old", "auth": "old"}
        assert _reply(correlator, "enroll/HW-1/reply", stale) is True
        assert not second.done()

        fresh = {"id": "HW-1", "nonce": new_nonce, "plugid": "new", "auth": "new"}
        assert _reply(correlator, "enroll/HW-1/reply", fresh) is True
        assert second.result(timeout=1).plug_id == "new"

    def test_timed_out_attempt_is_not_sent_after_late_suback(self, transport):
        correlator = RequestCorrelator(transport, TopicSchema("plug-1"), timeout_s=0.05)
        transport.hold_subacks = True

        first = correlator.enroll("HW-1", "model-1", "pw")
        with pytest.raises(RequestTimeoutError):
            first.result(timeout=2)

        correlator.timeout_s = 5.0
        second = correlator.enroll("HW-1", "model-1", "pw")
        old_suback, new_suback = transport.pending_subacks

        # the first attempt's subscription completes only now
        old_suback.set_result(None)
        assert transport.requests_on("enroll/HW-1/thing") == []

        new_suback.set_result(None)
        assert len(transport.requests_on("enroll/HW-1/thing")) == 1
        assert not second.done()
