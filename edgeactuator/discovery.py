# Greengrass discovery over HTTPS with the device certificate (mutual TLS).
import logging

import requests

from .errors import DiscoveryFailed, MalformedDiscoveryData, NoInformationPresent

LOG = logging.getLogger(__name__)

DISCOVER_PATH = "/greengrass/discover/thing/{thing_name}"


class DiscoveryClient:
    def __init__(self, endpoint, port, root_ca_path, cert_path, key_path, session=None):
        self.base_url = f"https://{endpoint}:{port}"
        self.root_ca_path = root_ca_path
        self.cert = (cert_path, key_path)
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, cfg):
        return cls(cfg.endpoint, cfg.discovery_port, cfg.root_ca_path,
                   cfg.client_cert_path, cfg.client_key_path)

    def discover(self, thing_name: str, timeout: float) -> dict:
        """One discovery request. Raises NoInformationPresent, DiscoveryFailed or MalformedDiscoveryData."""
        url = self.base_url + DISCOVER_PATH.format(thing_name=thing_name)
        try:
            resp = self.session.get(url, cert=self.cert, verify=self.root_ca_path, timeout=timeout)
        except requests.RequestException as e:
            raise DiscoveryFailed(f"discovery request failed: {e}") from e
        if resp.status_code == 404:
            raise NoInformationPresent(f"no connectivity information for {thing_name}")
        try:
            resp.raise_for_status()
        except requests.HTTPError as e:
            raise DiscoveryFailed(f"discovery returned HTTP {resp.status_code}") from e
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedDiscoveryData("discovery response is not JSON") from e
