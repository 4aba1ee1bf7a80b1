"""MQTT publication of workstation and device status.

The publisher keeps an internal bounded queue drained by a worker thread
that owns the paho-mqtt client, reconnects with exponential backoff and
never blocks the engine loops that produce the events.
"""

from __future__ import annotations

import json
import os
import queue
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import paho.mqtt.client as mqtt

from burnin.app.settings import MqttSettings
from burnin.utils.logs import logger


class MqttStatusPublisher:
    """Publishes supervisor events and device connectivity changes."""

    def __init__(self, settings: Optional[MqttSettings] = None, *, client_factory=None):
        self.settings = settings or MqttSettings()
        self.client_id = self.settings.client_id or f"burnin-{os.getpid()}"
        self._queue: "queue.Queue[Tuple[str, Dict[str, Any]]]" = queue.Queue(maxsize=10000)
        self._client_factory = client_factory or self._default_client
        self._client: Optional[mqtt.Client] = None
        self._connected = False
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None

    @property
    def active(self) -> bool:
        return self.settings.enabled

    # ------------------------------------------------------------------
    # MQTT client lifecycle
    # ------------------------------------------------------------------
    def _default_client(self) -> mqtt.Client:
        return mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=True,
        )

    def start(self) -> None:
        if not self.active or self._worker is not None:
            return
        self._client = self._client_factory()
        if self.settings.username:
            self._client.username_pw_set(self.settings.username, self.settings.password)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._stop_event.clear()
        self._worker = threading.Thread(target=self._run_loop, name="mqtt-publisher", daemon=True)
        self._worker.start()

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if not getattr(reason_code, "is_failure", False):
            logger.info(
                "Connected to MQTT broker %s:%s (client_id=%s)",
                self.settings.host,
                self.settings.port,
                self.client_id,
            )
            self._connected = True
        else:
            logger.error("MQTT connection refused: %s", reason_code)
            self._connected = False

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self._connected = False
        if getattr(reason_code, "is_failure", False) and not self._stop_event.is_set():
            logger.warning("Unexpected MQTT disconnect (%s)", reason_code)

    def _run_loop(self) -> None:
        backoff = 1.0
        started = False
        while not self._stop_event.is_set():
            if not self._connected and not started:
                try:
                    self._client.connect(self.settings.host, self.settings.port, keepalive=self.settings.keepalive)
                    self._client.loop_start()
                    started = True
                    backoff = 1.0
                except Exception:
                    logger.exception("Cannot reach MQTT broker %s:%s", self.settings.host, self.settings.port)
                    self._stop_event.wait(backoff)
                    backoff = min(backoff * 2, 60.0)
                    continue

            try:
                topic_suffix, payload = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue

            try:
                self._publish_now(topic_suffix, payload)
            except Exception:
                logger.exception("MQTT publish failed; message will be retried")
                self._requeue(topic_suffix, payload)
                self._stop_event.wait(backoff)
                backoff = min(backoff * 2, 60.0)

    def shutdown(self) -> None:
        self._stop_event.set()
        if self._client is not None:
            try:
                self._client.loop_stop()
                self._client.disconnect()
            except Exception:
                logger.exception("Error while closing the MQTT client")
        if self._worker and self._worker.is_alive():
            self._worker.join(timeout=2.0)
        self._worker = None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def on_supervisor_event(self, event: str, payload: Dict[str, Any]) -> None:
        """Observer hooked into :class:`WorkstationSupervisor`."""

        workstation_id = payload.get("workstation_id")
        if not workstation_id:
            return
        self._enqueue(
            f"workstations/{workstation_id}",
            {"type": event, "sent_at": self._now_iso(), "source": self.client_id, **payload},
        )

    def on_connectivity_change(self, device_id: str, online: bool, payload: Dict[str, Any]) -> None:
        """Observer hooked into :class:`DeviceStateStore`."""

        self._enqueue(
            f"devices/{device_id}",
            {
                "type": "connectivity_event",
                "sent_at": self._now_iso(),
                "source": self.client_id,
                "state": "ONLINE" if online else "OFFLINE",
                **payload,
            },
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _enqueue(self, topic_suffix: str, payload: Dict[str, Any]) -> None:
        if not self.active:
            return
        item = (topic_suffix, payload)
        try:
            self._queue.put_nowait(item)
        except queue.Full:
            logger.warning("MQTT queue full; dropping the oldest message")
            try:
                self._queue.get_nowait()
            except queue.Empty:
                pass
            self._queue.put_nowait(item)

    def _requeue(self, topic_suffix: str, payload: Dict[str, Any]) -> None:
        try:
            self._queue.put_nowait((topic_suffix, payload))
        except queue.Full:
            logger.warning("MQTT queue full; message dropped after a failed publish")

    def _publish_now(self, topic_suffix: str, payload: Dict[str, Any]) -> None:
        if self._client is None:
            return
        if not self._connected:
            raise RuntimeError("MQTT client is not connected")
        result = self._client.publish(
            self.build_topic(topic_suffix),
            payload=json.dumps(payload, default=self._json_default),
            qos=self.settings.qos,
            retain=self.settings.retain,
        )
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            raise RuntimeError(f"MQTT publish failed with code {result.rc}")

    def build_topic(self, suffix: str) -> str:
        base = (self.settings.base_topic or "").strip("/")
        suffix = (suffix or "").strip("/")
        if base and suffix:
            return f"{base}/{suffix}"
        return base or suffix

    def pending(self) -> int:
        return self._queue.qsize()

    @staticmethod
    def _json_default(value: Any) -> str:
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.isoformat()
        raise TypeError(f"value {value!r} is not JSON serialisable")

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()


__all__ = ["MqttStatusPublisher"]
