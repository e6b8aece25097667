"""
MQTT session for the CloudPlugs client.

Owns one paho-mqtt client and the connection state machine:
DISCONNECTED -> CONNECTING -> CONNECTED | DISCONNECTED (error)
CONNECTED -> DISCONNECTING -> DISCONNECTED

connect/disconnect/publish/subscribe/unsubscribe never block; each returns a
Future resolved from paho's network thread when the broker acknowledges (or
the socket write completes, for QoS 0). There is no automatic reconnection:
a lost session stops the network loop and is reported via on_connection_lost.
"""

from __future__ import annotations

import logging
import ssl
import threading
from concurrent.futures import Future
from enum import Enum
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from cloudplugs_mqtt.config import ClientConfig
from cloudplugs_mqtt.errors import (
    AlreadyConnectedError,
    AlreadyConnectingError,
    AuthError,
    BrokerConnectionError,
    NotConnectedError,
    ValidationError,
)
from cloudplugs_mqtt.futures import completed, failed, settle

logger = logging.getLogger(__name__)

# CONNACK codes rejecting credentials: MQTT 5 numbering (paho maps 3.1.1 codes 4/5 onto 134/135)
_AUTH_REASON_CODES = (4, 5, 134, 135)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


def _rc_mid(result: Any) -> tuple[int, int]:
    # publish() returns MQTTMessageInfo; subscribe()/unsubscribe() return (rc, mid)
    if isinstance(result, tuple):
        return result[0], result[1]
    return result.rc, result.mid


def _is_failure(reason_code: Any) -> bool:
    is_failure = getattr(reason_code, "is_failure", None)
    if is_failure is not None:
        return bool(is_failure)
    # bare ints: SUBACK grants 0..2, failures are >= 0x80
    return int(reason_code) >= 0x80


def _connack_failed(reason_code: Any) -> bool:
    is_failure = getattr(reason_code, "is_failure", None)
    if is_failure is not None:
        return bool(is_failure)
    return int(reason_code) != 0


def _connect_error(reason_code: Any) -> BrokerConnectionError:
    value = getattr(reason_code, "value", reason_code)
    if value in _AUTH_REASON_CODES:
        return AuthError(f"Broker rejected credentials: {reason_code}")
    return BrokerConnectionError(f"Broker refused connection: {reason_code}")


class Connection:
    """
    One MQTT session. Owner callbacks:
    on_message(topic, payload, retained) for every inbound delivery,
    on_connection_lost(error) when an established session drops.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._client: Optional[mqtt.Client] = None
        self._config: Optional[ClientConfig] = None

        self._connect_future: Optional[Future] = None
        self._disconnect_future: Optional[Future] = None
        self._timer: Optional[threading.Timer] = None

        # mid -> future of a publish/subscribe/unsubscribe awaiting its ack
        self._inflight: dict[int, Future] = {}
        # acks that beat the registration of their mid, kept while a send is in progress
        self._early: dict[int, Optional[BaseException]] = {}
        self._sending = 0

        self.on_message: Optional[Callable[[str, bytes, bool], None]] = None
        self.on_connection_lost: Optional[Callable[[BaseException], None]] = None

    # -------------------------
    # State
    # -------------------------
    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def session(self) -> Optional[mqtt.Client]:
        """The raw paho client, for advanced use. None while disconnected."""
        with self._lock:
            return self._client

    @property
    def connect_future(self) -> Optional[Future]:
        """The pending connect's future while CONNECTING, else None."""
        with self._lock:
            return self._connect_future if self._state is ConnectionState.CONNECTING else None

    # -------------------------
    # Connect / disconnect
    # -------------------------
    def _build_client(self, config: ClientConfig) -> mqtt.Client:
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id or "",
            clean_session=not config.persistence,
            protocol=mqtt.MQTTv311,
        )
        if config.plug_id:
            client.username_pw_set(config.plug_id, config.password)
        if config.tls:
            if config.allow_invalid_certificates:
                client.tls_set(cert_reqs=ssl.CERT_NONE)
                client.tls_insecure_set(True)
            else:
                client.tls_set(cert_reqs=ssl.CERT_REQUIRED)

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_publish = self._on_publish
        client.on_subscribe = self._on_subscribe
        client.on_unsubscribe = self._on_unsubscribe
        return client

    def connect(self, config: ClientConfig) -> Future:
        with self._lock:
            if self._state is ConnectionState.CONNECTING:
                return failed(AlreadyConnectingError("A connect is already in progress"))
            if self._state is not ConnectionState.DISCONNECTED:
                return failed(AlreadyConnectedError(f"Session is {self._state.value}"))

            try:
                client = self._build_client(config)
                client.connect_async(config.host, config.effective_port, keepalive=config.keepalive)
            except (ValueError, OSError) as exc:
                logger.error("MQTT client setup failed for %s:%s: %s", config.host, config.effective_port, exc)
                err = BrokerConnectionError(f"Cannot set up MQTT session: {exc}")
                err.__cause__ = exc
                return failed(err)

            future: Future = Future()
            self._client = client
            self._config = config
            self._state = ConnectionState.CONNECTING
            self._connect_future = future
            self._arm_timer(config.connect_timeout_s, self._connect_timed_out, client)
            logger.info(
                "Connecting to %s:%s (tls=%s) as %s",
                config.host,
                config.effective_port,
                config.tls,
                config.plug_id or config.client_id or "<anonymous>",
            )
            client.loop_start()
        return future

    def disconnect(self) -> Future:
        with self._lock:
            state = self._state
            if state is ConnectionState.DISCONNECTED:
                return completed()
            if state is ConnectionState.DISCONNECTING:
                return self._disconnect_future  # type: ignore[return-value]

            if state is ConnectionState.CONNECTING:
                connect_future = self._connect_future
                client, inflight = self._detach_locked()
            else:
                self._state = ConnectionState.DISCONNECTING
                self._disconnect_future = Future()
                future = self._disconnect_future
                client = self._client
                timeout = self._config.connect_timeout_s if self._config else 10.0
                self._arm_timer(timeout, self._disconnect_timed_out, client)

        if state is ConnectionState.CONNECTING:
            logger.info("Connect aborted by disconnect()")
            self._stop_client(client, on_loop_thread=False)
            err = BrokerConnectionError("Connect aborted by disconnect()")
            self._fail_all(inflight, err)
            if connect_future is not None:
                settle(connect_future, error=err)
            return completed()

        logger.info("Disconnecting")
        rc = client.disconnect()
        if rc != mqtt.MQTT_ERR_SUCCESS:
            # no DISCONNECT could be sent, so no on_disconnect will follow
            logger.warning("MQTT disconnect rc=%s (%s)", rc, mqtt.error_string(rc))
            self._force_close(client)
        return future

    def _force_close(self, client: mqtt.Client) -> None:
        with self._lock:
            if client is not self._client:
                return
            disconnect_future = self._disconnect_future
            _, inflight = self._detach_locked()
        self._stop_client(client, on_loop_thread=False)
        self._fail_all(inflight, BrokerConnectionError("Disconnected"))
        if disconnect_future is not None:
            settle(disconnect_future)

    def _arm_timer(self, seconds: float, fn: Callable[[mqtt.Client], None], client: mqtt.Client) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = threading.Timer(seconds, fn, args=(client,))
        self._timer.daemon = True
        self._timer.start()

    def _detach_locked(self) -> tuple[Optional[mqtt.Client], list[Future]]:
        """Drop the session; caller stops the returned client outside the lock."""
        client = self._client
        inflight = list(self._inflight.values())
        self._inflight.clear()
        self._early.clear()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._client = None
        self._connect_future = None
        self._disconnect_future = None
        self._state = ConnectionState.DISCONNECTED
        return client, inflight

    def _stop_client(self, client: Optional[mqtt.Client], *, on_loop_thread: bool) -> None:
        if client is None:
            return

        def _stop() -> None:
            try:
                client.disconnect()
            except Exception as exc:
                logger.debug("Ignoring disconnect error during teardown: %s", exc)
            client.loop_stop()

        if on_loop_thread:
            # loop_stop() from the network thread only flags it to exit
            _stop()
            return
        # loop_stop() joins the network thread; never do that on the caller's thread
        threading.Thread(target=_stop, name="cloudplugs-teardown", daemon=True).start()

    @staticmethod
    def _fail_all(futures: list[Future], error: BaseException) -> None:
        for f in futures:
            settle(f, error=error)

    def _connect_timed_out(self, client: mqtt.Client) -> None:
        with self._lock:
            if client is not self._client or self._state is not ConnectionState.CONNECTING:
                return
            future = self._connect_future
            config = self._config
            _, inflight = self._detach_locked()
        logger.error("MQTT connect timed out after %ss", config.connect_timeout_s if config else "?")
        self._stop_client(client, on_loop_thread=False)
        err = BrokerConnectionError("Connect timed out")
        self._fail_all(inflight, err)
        if future is not None:
            settle(future, error=err)

    def _disconnect_timed_out(self, client: mqtt.Client) -> None:
        logger.warning("No disconnect acknowledgement; closing session")
        self._force_close(client)

    # -------------------------
    # Operations
    # -------------------------
    def publish(self, topic: str, payload: bytes, qos: int, *, retain: bool = False) -> Future:
        return self._send(
            "publish",
            lambda c: c.publish(topic, payload=payload, qos=qos, retain=retain),
        )

    def subscribe(self, topic: str, qos: int) -> Future:
        return self._send("subscribe", lambda c: c.subscribe(topic, qos=qos))

    def unsubscribe(self, topic: str) -> Future:
        return self._send("unsubscribe", lambda c: c.unsubscribe(topic))

    def _send(self, what: str, call: Callable[[mqtt.Client], Any]) -> Future:
        with self._lock:
            if self._state is not ConnectionState.CONNECTED or self._client is None:
                return failed(NotConnectedError(f"Cannot {what}: not connected"))
            client = self._client
            self._sending += 1

        future: Future = Future()
        try:
            result = call(client)
        except (ValueError, TypeError) as exc:
            with self._lock:
                self._sending -= 1
            err = ValidationError(f"Invalid {what} arguments: {exc}")
            err.__cause__ = exc
            return failed(err)

        rc, mid = _rc_mid(result)
        outcome: Optional[tuple[Optional[BaseException]]] = None
        with self._lock:
            self._sending -= 1
            if rc != mqtt.MQTT_ERR_SUCCESS:
                outcome = (BrokerConnectionError(f"{what} failed: {mqtt.error_string(rc)}"),)
            elif mid in self._early:
                outcome = (self._early.pop(mid),)
            elif client is not self._client:
                outcome = (BrokerConnectionError("Connection lost"),)
            else:
                self._inflight[mid] = future
            if self._sending == 0:
                self._early.clear()

        if outcome is not None:
            settle(future, error=outcome[0])
        return future

    def _resolve_mid(self, client: mqtt.Client, mid: int, error: Optional[BaseException]) -> None:
        with self._lock:
            if client is not self._client:
                return
            future = self._inflight.pop(mid, None)
            if future is None:
                if self._sending:
                    self._early[mid] = error
                return
        settle(future, error=error)

    # -------------------------
    # paho callbacks (network thread)
    # -------------------------
    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        with self._lock:
            if client is not self._client or self._state is not ConnectionState.CONNECTING:
                return
            future = self._connect_future
            if _connack_failed(reason_code):
                _, inflight = self._detach_locked()
            else:
                inflight = None
                self._state = ConnectionState.CONNECTED
                self._connect_future = None
                if self._timer is not None:
                    self._timer.cancel()
                    self._timer = None

        if inflight is None:
            logger.info("Connected to MQTT broker")
            if future is not None:
                settle(future)
            return

        err = _connect_error(reason_code)
        logger.error("MQTT connect failed rc=%s", reason_code)
        self._stop_client(client, on_loop_thread=True)
        self._fail_all(inflight, err)
        if future is not None:
            settle(future, error=err)

    def _on_connect_fail(self, client: mqtt.Client, userdata: Any) -> None:
        with self._lock:
            if client is not self._client or self._state is not ConnectionState.CONNECTING:
                return
            future = self._connect_future
            config = self._config
            _, inflight = self._detach_locked()
        where = f"{config.host}:{config.effective_port}" if config else "broker"
        logger.error("Could not reach %s", where)
        self._stop_client(client, on_loop_thread=True)
        err = BrokerConnectionError(f"Could not reach {where}")
        self._fail_all(inflight, err)
        if future is not None:
            settle(future, error=err)

    def _on_disconnect(
        self, client: mqtt.Client, userdata: Any, disconnect_flags: Any, reason_code: Any, properties: Any = None
    ) -> None:
        with self._lock:
            if client is not self._client:
                return
            prev = self._state
            connect_future = self._connect_future
            disconnect_future = self._disconnect_future
            _, inflight = self._detach_locked()

        # no automatic reconnect: stop the network loop
        client.loop_stop()

        if prev is ConnectionState.DISCONNECTING:
            logger.info("Disconnected")
            self._fail_all(inflight, BrokerConnectionError("Disconnected"))
            if disconnect_future is not None:
                settle(disconnect_future)
            return

        err = BrokerConnectionError(f"Connection lost: {reason_code}")
        logger.warning("Unexpected disconnect rc=%s", reason_code)
        self._fail_all(inflight, err)
        if prev is ConnectionState.CONNECTING and connect_future is not None:
            settle(connect_future, error=err)
            return

        callback = self.on_connection_lost
        if callback is not None:
            try:
                callback(err)
            except Exception:
                logger.exception("on_connection_lost callback failed")

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        if client is not self.session:
            return
        handler = self.on_message
        if handler is None:
            logger.debug("Dropping message on %s: no handler", msg.topic)
            return
        try:
            handler(msg.topic, msg.payload, bool(msg.retain))
        except Exception:
            # an exception here would kill paho's network loop
            logger.exception("Message handler failed for topic=%s", msg.topic)

    def _on_publish(self, client: mqtt.Client, userdata: Any, mid: int, reason_code: Any = None, properties: Any = None) -> None:
        error = None
        if reason_code is not None and _is_failure(reason_code):
            error = BrokerConnectionError(f"Publish refused: {reason_code}")
        self._resolve_mid(client, mid, error)

    def _on_subscribe(self, client: mqtt.Client, userdata: Any, mid: int, reason_code_list: Any, properties: Any = None) -> None:
        error = None
        refused = [rc for rc in (reason_code_list or []) if _is_failure(rc)]
        if refused:
            error = AuthError(f"Subscription refused: {refused[0]}")
        self._resolve_mid(client, mid, error)

    def _on_unsubscribe(self, client: mqtt.Client, userdata: Any, mid: int, reason_code_list: Any = None, properties: Any = None) -> None:
        self._resolve_mid(client, mid, None)
