"""
cloudplugs-mqtt: device-side client for the CloudPlugs IoT platform over MQTT.

Publishes data on plug-scoped channels, subscribes to them, reads and writes
plug properties and enrolls devices, on top of one paho-mqtt session.
Request/response exchanges are correlated over pub/sub and every operation
returns a concurrent.futures.Future.
"""

from cloudplugs_mqtt.client import CloudPlugsClient
from cloudplugs_mqtt.config import ClientConfig, ConfigError, load_config
from cloudplugs_mqtt.connection import ConnectionState
from cloudplugs_mqtt.dispatcher import MessageSink
from cloudplugs_mqtt.envelopes import EnrollResult
from cloudplugs_mqtt.errors import (
    AlreadyConnectedError,
    AlreadyConnectingError,
    AlreadyEnrollingError,
    AuthError,
    BrokerConnectionError,
    CloudPlugsError,
    NotConnectedError,
    PlatformError,
    ProtocolError,
    RequestTimeoutError,
    ValidationError,
)
from cloudplugs_mqtt.mqtt_topics import TopicSchema, TopicSchemaError

__all__ = [
    "CloudPlugsClient",
    "ClientConfig",
    "ConfigError",
    "load_config",
    "ConnectionState",
    "MessageSink",
    "EnrollResult",
    "TopicSchema",
    "TopicSchemaError",
    "CloudPlugsError",
    "BrokerConnectionError",
    "AuthError",
    "NotConnectedError",
    "AlreadyConnectingError",
    "AlreadyConnectedError",
    "RequestTimeoutError",
    "ProtocolError",
    "ValidationError",
    "AlreadyEnrollingError",
    "PlatformError",
]
