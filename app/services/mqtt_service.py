import json
import logging
import threading
import ssl
from pathlib import Path
from typing import Any, Dict, Optional
import paho.mqtt.client as mqtt
from app.config import settings
from app.utils.timezone import now_local

logger = logging.getLogger(__name__)


class MQTTService:
    """MQTT publisher for user notifications (book borrowed, fines due, NOC issued, new message).

    ``notify`` is fire-and-forget: a broker outage is logged and never fails
    the business operation that triggered it.
    """

    def __init__(self):
        self.client: Optional[mqtt.Client] = None
        self.is_connected = False
        self._lock = threading.Lock()

    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        """Callback when MQTT client connects to broker."""
        if reason_code.is_failure:
            logger.error(f"MQTT connection failed with code {reason_code}")
            self.is_connected = False
        else:
            self.is_connected = True
            logger.info(f"MQTT client connected to {settings.mqtt_broker}:{settings.mqtt_port}")

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        """Callback when MQTT client disconnects from broker."""
        self.is_connected = False
        if reason_code.is_failure:
            logger.warning(f"MQTT client disconnected unexpectedly (rc={reason_code})")
        else:
            logger.info("MQTT client disconnected")

    def topic_for(self, recipient_id) -> str:
        return settings.mqtt_notify_topic_format.format(recipient_id=recipient_id)

    def notify(self, recipient_id, kind: str, payload: Dict[str, Any]) -> bool:
        """Publish a notification for ``recipient_id``. Returns False when it was not sent."""
        try:
            if not (self.client and self.is_connected):
                logger.debug(f"MQTT not connected, dropping '{kind}' notification for {recipient_id}")
                return False

            body = json.dumps(
                {"kind": kind, "payload": payload, "timestamp": now_local().isoformat()},
                default=str,
            )
            topic = self.topic_for(recipient_id)
            result = self.client.publish(topic, body, qos=1)
            if result.rc != mqtt.MQTT_ERR_SUCCESS:
                logger.error(f"Failed to publish '{kind}' to {topic}: rc={result.rc}")
                return False
            logger.info(f"Notification '{kind}' sent to {topic}")
            return True
        except Exception as e:
            logger.error(f"Error sending '{kind}' notification to {recipient_id}: {e}", exc_info=True)
            return False

    def _setup_tls(self):
        """Enable TLS on the client using the configured CA and optional client certificate."""
        for label, path in (("CA certificate", settings.mqtt_ca_cert),
                            ("client certificate", settings.mqtt_client_cert),
                            ("client key", settings.mqtt_client_key)):
            if path and not Path(path).exists():
                raise FileNotFoundError(f"MQTT {label} not found: {path}")

        self.client.tls_set(
            ca_certs=settings.mqtt_ca_cert,
            certfile=settings.mqtt_client_cert,
            keyfile=settings.mqtt_client_key,
            cert_reqs=ssl.CERT_NONE if settings.mqtt_tls_insecure else ssl.CERT_REQUIRED,
        )
        if settings.mqtt_tls_insecure:
            self.client.tls_insecure_set(True)
            logger.warning("MQTT TLS certificate verification disabled")

    def connect(self):
        """Connect to MQTT broker with optional TLS/SSL support."""
        if not settings.mqtt_enabled:
            logger.info("MQTT notifications disabled by configuration")
            return

        try:
            with self._lock:
                if self.client and self.is_connected:
                    logger.info("MQTT client already connected")
                    return

                client_id = f"college-library-backend-{threading.current_thread().ident}"
                self.client = mqtt.Client(
                    mqtt.CallbackAPIVersion.VERSION2,
                    client_id=client_id,
                    clean_session=True,
                )
                self.client.on_connect = self.on_connect
                self.client.on_disconnect = self.on_disconnect

                if settings.mqtt_use_tls:
                    self._setup_tls()
                    if settings.mqtt_port == 1883:
                        logger.warning("TLS enabled but port is 1883. Consider using port 8883 for MQTT over TLS.")

                if settings.mqtt_username and settings.mqtt_password:
                    self.client.username_pw_set(settings.mqtt_username, settings.mqtt_password)

                protocol = "TLS" if settings.mqtt_use_tls else "TCP"
                logger.info(f"Connecting to MQTT broker at {settings.mqtt_broker}:{settings.mqtt_port} over {protocol}")
                try:
                    self.client.connect(settings.mqtt_broker, settings.mqtt_port, keepalive=60)
                except Exception as conn_error:
                    logger.warning(f"Initial MQTT connection failed: {conn_error}. The service will retry automatically.")
                # Network loop runs in its own thread and handles reconnection
                self.client.loop_start()

        except Exception as e:
            logger.error(f"Error setting up MQTT client: {e}", exc_info=True)
            self.is_connected = False

    def disconnect(self):
        """Disconnect from MQTT broker."""
        try:
            with self._lock:
                if self.client:
                    self.client.loop_stop()
                    self.client.disconnect()
                    self.is_connected = False
                    logger.info("MQTT client disconnected")
        except Exception as e:
            logger.error(f"Error disconnecting from MQTT broker: {e}", exc_info=True)

    def is_running(self) -> bool:
        """Check if MQTT service is running and connected."""
        return self.is_connected and self.client is not None


mqtt_service = MQTTService()
