"""paho-mqtt adapter feeding broker traffic into an ``IngestionCoordinator``."""

from __future__ import annotations

import logging
from typing import Any

import paho.mqtt.client as mqtt

from mqtt_history.ingest import IngestionCoordinator
from mqtt_history.models import InvalidRecordError, UserProperties

logger = logging.getLogger(__name__)


def user_properties_of(msg: Any) -> UserProperties | None:
    """Collect MQTT 5 user properties; repeated keys become lists."""
    props = getattr(msg, "properties", None)
    pairs = getattr(props, "UserProperty", None) if props is not None else None
    if not pairs:
        return None
    out: UserProperties = {}
    for key, value in pairs:
        existing = out.get(key)
        if existing is None:
            out[key] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            out[key] = [existing, value]
    return out


class BrokerListener:
    def __init__(
        self,
        coordinator: IngestionCoordinator,
        *,
        host: str,
        port: int = 1883,
        subscriptions: list[tuple[str, int]] | None = None,
        client_id: str = "",
        username: str | None = None,
        password: str | None = None,
        tls: bool = False,
        protocol_version: int = 5,
        keepalive: int = 60,
    ) -> None:
        self.coordinator = coordinator
        self.host = host
        self.port = port
        self.client_id = client_id
        self.subscriptions = subscriptions or [("#", 0)]
        self.keepalive = keepalive
        protocol = mqtt.MQTTv5 if protocol_version == 5 else mqtt.MQTTv311
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, protocol=protocol
        )
        if username is not None or password is not None:
            self.client.username_pw_set(username or "", password)
        if tls:
            self.client.tls_set()
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message
        self.received = 0

    @property
    def connection_id(self) -> str:
        if self.client_id:
            return f"{self.client_id}@{self.host}:{self.port}"
        return f"{self.host}:{self.port}"

    def _on_connect(
        self, client: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _props: Any = None
    ) -> None:
        if getattr(reason_code, "is_failure", False):
            logger.error("Connection to %s:%s refused: %s", self.host, self.port, reason_code)
            return
        logger.info("Connected to %s:%s", self.host, self.port)
        self.coordinator.connection_changed(self.connection_id)
        for topic, qos in self.subscriptions:
            result, _mid = client.subscribe(topic, qos)
            if result != mqtt.MQTT_ERR_SUCCESS:
                logger.error("Subscribe to %r failed immediately: rc=%s", topic, result)
                continue
            self.coordinator.mark_subscribed(topic, True)

    def _on_disconnect(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        _flags: Any,
        reason_code: Any,
        _props: Any = None,
    ) -> None:
        if getattr(reason_code, "is_failure", False):
            logger.warning("Unexpected disconnect from %s:%s: %s", self.host, self.port, reason_code)
        else:
            logger.info("Disconnected from %s:%s", self.host, self.port)

    def _on_message(self, _client: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        self.received += 1
        try:
            self.coordinator.on_message(
                msg.topic,
                bytes(msg.payload),
                msg.qos,
                bool(msg.retain),
                user_properties=user_properties_of(msg),
            )
        except InvalidRecordError as e:
            logger.warning("Dropping malformed message on %r: %s", msg.topic, e)

    def connect(self) -> None:
        self.client.connect(self.host, self.port, keepalive=self.keepalive)

    def loop_forever(self) -> None:
        self.connect()
        self.client.loop_forever()

    def start(self) -> None:
        self.connect()
        self.client.loop_start()

    def stop(self) -> None:
        self.client.disconnect()
        self.client.loop_stop()
