"""
Pytest configuration and shared fixtures
"""
import json
import os
import sys
from types import SimpleNamespace

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))


def rc(value: int):
    """Minimal stand-in for paho's ReasonCode."""
    return SimpleNamespace(value=value, is_failure=value >= 0x80)


class FakePahoClient:
    """
    Records what the library asks of paho and lets a test drive the
    network-thread callbacks. With auto_ack, publish/subscribe/unsubscribe and
    disconnect are acknowledged synchronously, before the call returns.
    """

    def __init__(self, *args, **kwargs):
        self.init_args = args
        self.init_kwargs = kwargs
        self.auto_ack = True
        self.granted_qos = None  # None grants what was asked
        self.username = None
        self.password = None
        self.tls = None
        self.tls_insecure = False
        self.connect_args = None
        self.loop_started = False
        self.loop_stopped = False
        self.connected = False
        self.disconnect_calls = 0
        self.published = []
        self.subscribed = []
        self.unsubscribed = []
        self._mid = 0

        self.on_connect = None
        self.on_connect_fail = None
        self.on_disconnect = None
        self.on_message = None
        self.on_publish = None
        self.on_subscribe = None
        self.on_unsubscribe = None

    def _next_mid(self):
        self._mid += 1
        return self._mid

    # paho API used by the library
    def username_pw_set(self, username, password=None):
        self.username = username
        self.password = password

    def tls_set(self, **kwargs):
        self.tls = kwargs

    def tls_insecure_set(self, value):
        self.tls_insecure = value

    def connect_async(self, host, port=1883, keepalive=60):
        self.connect_args = (host, port, keepalive)

    def loop_start(self):
        self.loop_started = True

    def loop_stop(self):
        self.loop_stopped = True

    def disconnect(self, *args, **kwargs):
        self.disconnect_calls += 1
        if self.connected:
            self.connected = False
            if self.auto_ack:
                self.on_disconnect(self, None, SimpleNamespace(is_disconnect_packet_from_server=False), rc(0), None)
        return 0

    def publish(self, topic, payload=None, qos=0, retain=False):
        mid = self._next_mid()
        self.published.append(SimpleNamespace(topic=topic, payload=payload, qos=qos, retain=retain, mid=mid))
        if self.auto_ack:
            self.on_publish(self, None, mid, rc(0), None)
        return SimpleNamespace(rc=0, mid=mid)

    def subscribe(self, topic, qos=0):
        mid = self._next_mid()
        self.subscribed.append((topic, qos, mid))
        if self.auto_ack:
            granted = qos if self.granted_qos is None else self.granted_qos
            self.on_subscribe(self, None, mid, [rc(granted)], None)
        return 0, mid

    def unsubscribe(self, topic):
        mid = self._next_mid()
        self.unsubscribed.append((topic, mid))
        if self.auto_ack:
            self.on_unsubscribe(self, None, mid, [rc(0)], None)
        return 0, mid

    # test drivers
    def accept(self):
        self.connected = True
        self.on_connect(self, None, SimpleNamespace(session_present=False), rc(0), None)

    def refuse(self, code):
        self.on_connect(self, None, SimpleNamespace(session_present=False), rc(code), None)

    def unreachable(self):
        self.on_connect_fail(self, None)

    def drop(self):
        self.connected = False
        self.on_disconnect(self, None, SimpleNamespace(is_disconnect_packet_from_server=False), rc(0x80), None)

    def deliver(self, topic, payload, retain=False):
        if not isinstance(payload, bytes):
            payload = json.dumps(payload).encode("utf-8")
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload, retain=retain))

    def ack_publish(self, mid):
        self.on_publish(self, None, mid, rc(0), None)

    def last_payload(self):
        return json.loads(self.published[-1].payload)


class FakePahoFactory:
    def __init__(self):
        self.instances = []
        self.auto_ack = True

    def __call__(self, *args, **kwargs):
        client = FakePahoClient(*args, **kwargs)
        client.auto_ack = self.auto_ack
        self.instances.append(client)
        return client

    @property
    def last(self):
        return self.instances[-1]


@pytest.fixture
def fake_paho(monkeypatch):
    """
    Patch paho.mqtt.client.Client so every session gets a controllable fake.
    """
    factory = FakePahoFactory()
    monkeypatch.setattr("paho.mqtt.client.Client", factory)
    return factory


@pytest.fixture
def sync_executor(monkeypatch):
    """Run sink deliveries inline on the calling thread."""
    submit_calls = []

    class FakeExecutor:
        def __init__(self, *a, **k):
            pass

        def submit(self, fn, *args):
            submit_calls.append((fn, args))
            fn(*args)

        def shutdown(self, *a, **k):
            pass

    monkeypatch.setattr("cloudplugs_mqtt.dispatcher.ThreadPoolExecutor", FakeExecutor)
    return submit_calls


@pytest.fixture
def clean_env(monkeypatch):
    """Remove CLOUDPLUGS_* variables so tests see only what they set."""
    for key in list(os.environ):
        if key.startswith("CLOUDPLUGS_"):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch
