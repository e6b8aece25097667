"""
CloudPlugs MQTT client.

Public API of the package. Composes the immutable ClientConfig, the MQTT
session (Connection), the request correlator and the inbound dispatcher.

Every operation returns a concurrent.futures.Future that resolves exactly
once. Operation errors (invalid input, not connected, timeouts, ...) are
delivered through that future, never raised to the caller.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Optional

from cloudplugs_mqtt.config import ClientConfig, package_version
from cloudplugs_mqtt.connection import Connection, ConnectionState
from cloudplugs_mqtt.correlator import RequestCorrelator
from cloudplugs_mqtt.dispatcher import MessageDispatcher, MessageSink
from cloudplugs_mqtt.envelopes import DataEnvelope
from cloudplugs_mqtt.errors import (
    AlreadyConnectedError,
    AlreadyConnectingError,
    BrokerConnectionError,
    CloudPlugsError,
    NotConnectedError,
    ValidationError,
)
from cloudplugs_mqtt.futures import completed, failed, settle
from cloudplugs_mqtt.log_config import apply_log_enabled
from cloudplugs_mqtt.mqtt_topics import TopicSchema, validate_identity

logger = logging.getLogger(__name__)


class CloudPlugsClient:
    """
    Device-side client for the CloudPlugs platform over MQTT.

    Configuration may only change while disconnected. enroll()/enroll_ctrl()
    also work before connect(): the client then opens a provisional,
    credential-less session for the enrollment and closes it afterwards.
    """

    def __init__(self, config: Optional[ClientConfig] = None, *, sink: Optional[MessageSink] = None) -> None:
        self._lock = threading.RLock()
        self._config = config or ClientConfig()
        apply_log_enabled(self._config.log_enabled)

        # topics the application subscribed to (full topic strings)
        self._subscriptions: set[str] = set()
        self._enroll_session = False
        self._enroll_refs = 0

        self._connection = Connection()
        self._correlator = RequestCorrelator(
            self._connection,
            TopicSchema(self._config.plug_id),
            qos=self._config.qos,
            timeout_s=self._config.request_timeout_s,
            keep_subscribed=self._is_subscribed,
        )
        self._dispatcher = MessageDispatcher(self._correlator, sink)
        self._connection.on_message = self._dispatcher.dispatch
        self._connection.on_connection_lost = self._on_connection_lost

    # -------------------------
    # Configuration and state
    # -------------------------
    @property
    def config(self) -> ClientConfig:
        with self._lock:
            return self._config

    def configure(self, **changes: Any) -> ClientConfig:
        """
        Replace configuration fields (host=..., tls=..., qos=...).
        Only allowed while disconnected; raises AlreadyConnectingError /
        AlreadyConnectedError otherwise, ConfigError on invalid values.
        """
        with self._lock:
            state = self._connection.state
            if state is ConnectionState.CONNECTING:
                raise AlreadyConnectingError("Cannot change configuration while connecting")
            if state is not ConnectionState.DISCONNECTED:
                raise AlreadyConnectedError("Cannot change configuration while connected")
            config = self._config.replace(**changes)
            topics = TopicSchema(config.plug_id)
            self._config = config
            self._correlator.topics = topics
            self._correlator.qos = config.qos
            self._correlator.timeout_s = config.request_timeout_s
        apply_log_enabled(config.log_enabled)
        return config

    def set_credentials(self, plug_id: str, password: str, client_id: Optional[str] = None) -> ClientConfig:
        """Set the plug id / auth (and optionally the serial client id) used by connect()."""
        changes: dict[str, Any] = {"plug_id": plug_id, "password": password}
        if client_id is not None:
            changes["client_id"] = client_id
        return self.configure(**changes)

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def session(self):
        """The underlying paho-mqtt client for advanced use, or None while disconnected."""
        return self._connection.session

    @property
    def sink(self) -> Optional[MessageSink]:
        return self._dispatcher.sink

    @sink.setter
    def sink(self, sink: Optional[MessageSink]) -> None:
        self._dispatcher.sink = sink

    @property
    def pending_requests(self) -> int:
        return self._correlator.pending_count

    def _is_subscribed(self, topic: str) -> bool:
        with self._lock:
            return topic in self._subscriptions

    # -------------------------
    # Session
    # -------------------------
    def connect(self) -> Future:
        """Open the session with the configured credentials. Resolves to None."""
        with self._lock:
            config = self._config
            logger.info("CloudPlugs MQTT client %s", package_version())
            future = self._connection.connect(config)
        return future

    def disconnect(self) -> Future:
        """
        Close the session. Pending requests fail at once with
        BrokerConnectionError; their replies could no longer arrive.
        """
        self._correlator.fail_all(BrokerConnectionError("Client disconnected"))
        with self._lock:
            if not self._config.persistence:
                self._subscriptions.clear()
        return self._connection.disconnect()

    def close(self) -> Future:
        """Disconnect and stop the sink worker. The client is unusable afterwards."""
        done = self.disconnect()
        self._dispatcher.shutdown()
        return done

    def _on_connection_lost(self, error: BaseException) -> None:
        logger.warning("Session lost: %s", error)
        self._correlator.fail_all(error)
        with self._lock:
            if not self._config.persistence:
                self._subscriptions.clear()
        self._dispatcher.notify_connection_lost(error)

    def _not_connected(self, what: str) -> Optional[Future]:
        if self._connection.state is not ConnectionState.CONNECTED:
            return failed(NotConnectedError(f"Cannot {what}: not connected"))
        with self._lock:
            if self._enroll_session:
                return failed(NotConnectedError(f"Cannot {what}: only enrollment runs on the provisional session"))
        return None

    @staticmethod
    def _submit(what: str, op: Callable[[], Future]) -> Future:
        try:
            return op()
        except CloudPlugsError as exc:
            return failed(exc)
        except (TypeError, ValueError) as exc:
            err = ValidationError(f"Invalid {what} arguments: {exc}")
            err.__cause__ = exc
            return failed(err)

    # -------------------------
    # Pub/sub
    # -------------------------
    def publish(self, message: Any, topic: str, ttl: Optional[int] = None, of: Optional[str] = None) -> Future:
        """
        Publish a data record on <plug>/data/<topic>, plug being `of` or our own.
        ttl defaults to config.default_ttl; it is sent even when the message
        has expire_at (the platform then ignores it).
        """
        not_connected = self._not_connected("publish")
        if not_connected is not None:
            return not_connected

        def _op() -> Future:
            config = self.config
            effective_ttl = config.default_ttl if ttl is None else ttl
            if effective_ttl is not None and effective_ttl < 0:
                raise ValidationError("ttl must be >= 0")
            target = self._correlator.topics.data(topic, of)
            payload = DataEnvelope(data=message, ttl=effective_ttl).to_bytes()
            logger.debug("Publishing %d bytes to %s", len(payload), target)
            return self._connection.publish(target, payload, config.qos)

        return self._submit("publish", _op)

    def subscribe(self, topic: str, prefix: Optional[bool] = None, plug_id: Optional[str] = None) -> Future:
        """
        Subscribe to a channel. prefix (default config.default_prefix) scopes it
        to <plug>/data/<topic>; plug_id targets another device's channel.
        Resolves to the full subscribed topic.
        """
        not_connected = self._not_connected("subscribe")
        if not_connected is not None:
            return not_connected

        def _op() -> Future:
            config = self.config
            use_prefix = config.default_prefix if prefix is None else prefix
            full = self._correlator.topics.subscription(topic, prefix=use_prefix, plug_id=plug_id)
            with self._lock:
                self._subscriptions.add(full)
            out: Future = Future()

            def _done(f: Future) -> None:
                exc = f.exception()
                if exc is not None:
                    with self._lock:
                        self._subscriptions.discard(full)
                    settle(out, error=exc)
                    return
                logger.info("Subscribed: %s", full)
                settle(out, full)

            self._connection.subscribe(full, config.qos).add_done_callback(_done)
            return out

        return self._submit("subscribe", _op)

    def unsubscribe(self, topic: str, plug_id: Optional[str] = None, prefix: Optional[bool] = None) -> Future:
        """Unsubscribe a channel subscribed with subscribe(). Unknown topics are a no-op."""

        def _op() -> Future:
            use_prefix = self.config.default_prefix if prefix is None else prefix
            full = self._correlator.topics.subscription(topic, prefix=use_prefix, plug_id=plug_id)
            with self._lock:
                if full not in self._subscriptions:
                    logger.debug("Unsubscribe %s: not subscribed", full)
                    return completed()
            not_connected = self._not_connected("unsubscribe")
            if not_connected is not None:
                return not_connected
            with self._lock:
                self._subscriptions.discard(full)
            logger.info("Unsubscribed: %s", full)
            return self._correlator.unsubscribe_unless_pending(full)

        return self._submit("unsubscribe", _op)

    # -------------------------
    # Properties
    # -------------------------
    def get_property(self, key: str, plug_id: Optional[str] = None) -> Future:
        """Resolves to the value of property key on plug_id (own plug when None)."""
        not_connected = self._not_connected("get property")
        if not_connected is not None:
            return not_connected
        return self._submit("get_property", lambda: self._correlator.get_property(key, plug_id))

    def set_property(self, key: str, value: Any, plug_id: Optional[str] = None) -> Future:
        """Resolves to None once the platform stored value under key."""
        not_connected = self._not_connected("set property")
        if not_connected is not None:
            return not_connected
        return self._submit("set_property", lambda: self._correlator.set_property(key, value, plug_id))

    # -------------------------
    # Enrollment
    # -------------------------
    def enroll(self, hwid: str, model_id: str, password: str) -> Future:
        """
        Enroll a production device.

        Args:
            hwid: hardware id / serial number of the thing
            model_id: plug id of the thing's production template
            password: enrollment password of the thing

        Resolves to EnrollResult(plug_id, auth).
        """
        return self._enroll(hwid, lambda: self._correlator.enroll(hwid, model_id, password))

    def enroll_ctrl(self, hwid: str, model_id: str, ctrl_hwid: str, password: str) -> Future:
        """
        Enroll a (new or existing) controller of a thing.

        Args:
            hwid: hardware id of the thing to control
            model_id: production template of the thing to control
            ctrl_hwid: hardware id of the controller
            password: control password defined in the thing's production template

        Resolves to EnrollResult(plug_id, auth).
        """
        return self._enroll(hwid, lambda: self._correlator.enroll_ctrl(hwid, model_id, ctrl_hwid, password))

    def _enroll(self, hwid: str, issue: Callable[[], Future]) -> Future:
        try:
            validate_identity(hwid, "hwid")
        except ValidationError as exc:
            return failed(exc)

        with self._lock:
            state = self._connection.state
            if state is ConnectionState.DISCONNECTING:
                return failed(NotConnectedError("Cannot enroll: session is closing"))
            if state is ConnectionState.CONNECTED:
                if not self._enroll_session:
                    return self._submit("enroll", issue)
                # joins the open provisional session, which must outlive it
                ready = completed()
            else:
                ready = self._connection.connect_future
                if ready is None:
                    logger.info("Opening provisional session for enrollment of %s", hwid)
                    ready = self._connection.connect(self._config.for_enrollment(hwid))
                    self._enroll_session = True
            owned = self._enroll_session
            if owned:
                self._enroll_refs += 1

        outer: Future = Future()

        def _on_ready(f: Future) -> None:
            error = BrokerConnectionError("Connect cancelled") if f.cancelled() else f.exception()
            if error is not None:
                self._finish_enroll(owned, outer, failed(error))
                return
            inner = self._submit("enroll", issue)
            inner.add_done_callback(lambda r: self._finish_enroll(owned, outer, r))

        ready.add_done_callback(_on_ready)
        return outer

    def _finish_enroll(self, owned: bool, outer: Future, result: Future) -> None:
        def _copy(_: Any = None) -> None:
            error = result.exception()
            if error is not None:
                settle(outer, error=error)
            else:
                settle(outer, result.result())

        if not owned:
            _copy()
            return
        with self._lock:
            self._enroll_refs -= 1
            close = self._enroll_refs == 0 and self._enroll_session
            if close:
                self._enroll_session = False
                logger.info("Closing provisional enrollment session")
                # DISCONNECTING from here on, so no new enrollment can join
                done = self._connection.disconnect()
        if not close:
            _copy()
            return
        self._correlator.fail_all(BrokerConnectionError("Provisional enrollment session closed"))
        # resolve only once the session is down, so credentials can be applied right away
        done.add_done_callback(_copy)
