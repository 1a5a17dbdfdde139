import pytest

from edgeactuator.config import DeviceConfig


@pytest.fixture
def cfg(tmp_path):
    return DeviceConfig(
        endpoint="iot.example.com",
        thing_name="actuator",
        root_ca_path=str(tmp_path / "root.ca.pem"),
        client_cert_path=str(tmp_path / "device.crt"),
        client_key_path=str(tmp_path / "device.key"),
        mqtt_command_timeout_ms=50,
        discover_retry_count=3,
        discover_backoff_secs=0,
        connect_settle_secs=0,
        post_ack_settle_secs=0,
        output_dir=str(tmp_path),
    )
