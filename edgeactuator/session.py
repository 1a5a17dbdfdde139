# Secure MQTT session to a gateway core: mutual TLS, CONNACK wait, loss signal.
import logging
import ssl
import threading

import paho.mqtt.client as mqtt

LOG = logging.getLogger(__name__)


class MqttSession:
    def __init__(self, host, port, ca_path, cert_path, key_path, client_id,
                 keepalive=600, clean_session=True):
        self.host = host
        self.port = port
        self.ca_path = ca_path
        self.keepalive = keepalive
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id,
                                  clean_session=clean_session, protocol=mqtt.MQTTv311)
        self.client.tls_set(ca_certs=ca_path, certfile=cert_path, keyfile=key_path,
                            cert_reqs=ssl.CERT_REQUIRED, tls_version=ssl.PROTOCOL_TLS_CLIENT)
        self.client.tls_insecure_set(False)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message
        self.connected = threading.Event()
        self.lost = threading.Event()
        self._connack = None
        self._closing = False
        self._handlers = []

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        self._connack = reason_code
        if reason_code == 0:
            self.connected.set()
        LOG.debug("CONNACK from %s:%s rc=%s", self.host, self.port, reason_code)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        was_connected = self.connected.is_set()
        self.connected.clear()
        if was_connected and not self._closing:
            LOG.warning("session to %s:%s lost rc=%s", self.host, self.port, reason_code)
            self.lost.set()

    def _on_message(self, client, userdata, msg):
        for handler in list(self._handlers):
            try:
                handler(msg.topic, msg.payload)
            except Exception:
                LOG.exception("message handler failed for %s", msg.topic)

    def add_message_handler(self, handler):
        self._handlers.append(handler)

    def connect(self, timeout: float) -> bool:
        """Connect and wait for an accepting CONNACK; False on refusal, TLS or socket error."""
        try:
            self.client.connect(self.host, self.port, keepalive=self.keepalive)
        except (OSError, ssl.SSLError) as e:
            LOG.info("connect to %s:%s failed: %s", self.host, self.port, e)
            return False
        self.client.loop_start()
        if self.connected.wait(timeout):
            return True
        LOG.info("no accepting CONNACK from %s:%s rc=%s", self.host, self.port, self._connack)
        self._closing = True
        self.client.loop_stop()
        self.client.disconnect()
        return False

    def subscribe(self, topic, qos=0):
        result, mid = self.client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            LOG.warning("subscribe %s failed rc=%s", topic, result)
        return result == mqtt.MQTT_ERR_SUCCESS

    def publish(self, topic, payload, qos=0):
        info = self.client.publish(topic, payload, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            LOG.warning("publish to %s failed rc=%s", topic, info.rc)
        return info.rc == mqtt.MQTT_ERR_SUCCESS

    def disconnect(self):
        self._closing = True
        self.client.disconnect()
        self.client.loop_stop()
        self.connected.clear()


class SessionFactory:
    """Builds a session for one (candidate, trust anchor) pair."""

    def __init__(self, cfg):
        self.cfg = cfg

    def __call__(self, candidate, ca_path):
        return MqttSession(candidate.host_address, candidate.port, ca_path,
                           self.cfg.client_cert_path, self.cfg.client_key_path,
                           self.cfg.effective_client_id,
                           keepalive=self.cfg.keepalive_secs,
                           clean_session=self.cfg.clean_session)
