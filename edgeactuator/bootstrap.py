"""
Discovery-and-connect bootstrap.

discover(): bounded, strictly sequential discovery attempts with a fixed
backoff. "No connectivity information" is terminal and returned at once;
everything else transient is retried until the budget is spent.

connect(): candidates in catalog order, and for each candidate every trust
anchor of its group in index order. The first pair that yields an accepting
CONNACK wins; nothing after it is tried.
"""
import logging
import os
import ssl
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from tenacity import (RetryError, Retrying, before_sleep_log,
                      retry_if_exception_type, stop_after_attempt, wait_fixed)

from . import metrics
from .catalog import DISCOVERY_OUTPUT_NAME, ConnectivityCandidate, EndpointCatalog, anchor_path, save_discovery_document
from .errors import (ConnectExhausted, DiscoveryExhausted, NoRegistration,
                     ShutdownRequested, TransientNetwork)

LOG = logging.getLogger(__name__)


@dataclass
class SessionState:
    session: object
    candidate: ConnectivityCandidate
    anchor_index: int   # 1-based, matches <group>_root_ca<index>.pem
    ca_path: str

    def close(self):
        self.session.disconnect()


class ConnectBootstrap:
    def __init__(self, cfg, discovery_client, session_factory: Callable,
                 stop_event: Optional[threading.Event] = None):
        self.cfg = cfg
        self.discovery_client = discovery_client
        self.session_factory = session_factory
        self.stop_event = stop_event or threading.Event()

    def _sleep(self, seconds):
        if self.stop_event.wait(seconds):
            raise ShutdownRequested("shutdown during bootstrap")

    def _discover_once(self, thing_name):
        try:
            raw = self.discovery_client.discover(thing_name, self.cfg.discover_timeout)
        except TransientNetwork as e:
            metrics.discovery_attempts.labels(outcome="transient").inc()
            LOG.info("Discover request failed: %s. Trying again...", e)
            raise
        except NoRegistration:
            metrics.discovery_attempts.labels(outcome="no_information").inc()
            LOG.info("No GGC connectivity information present for %s", thing_name)
            raise
        metrics.discovery_attempts.labels(outcome="success").inc()
        return raw

    def discover(self, thing_name: str) -> EndpointCatalog:
        retrying = Retrying(
            stop=stop_after_attempt(self.cfg.discover_retry_count),
            wait=wait_fixed(self.cfg.discover_backoff_secs),
            retry=retry_if_exception_type(TransientNetwork),
            sleep=self._sleep,
            before_sleep=before_sleep_log(LOG, logging.DEBUG),
        )
        try:
            raw = retrying(self._discover_once, thing_name)
        except RetryError as e:
            LOG.error("Discover failed after %d attempts", self.cfg.discover_retry_count)
            raise DiscoveryExhausted(
                f"discovery failed after {self.cfg.discover_retry_count} attempts") from e.last_attempt.exception()

        catalog = EndpointCatalog.build_from(raw)
        LOG.info("GGC connectivity information found: %d candidates in %d groups",
                 len(catalog), len(catalog.anchors))
        # connect() reads the anchors back from these files
        output_dir = self.cfg.output_dir or os.getcwd()
        save_discovery_document(raw, os.path.join(output_dir, DISCOVERY_OUTPUT_NAME))
        catalog.write_trust_anchors(output_dir)
        return catalog

    def connect(self, catalog: EndpointCatalog) -> SessionState:
        for candidate in catalog:
            anchors = catalog.anchors_for(candidate.group_name)
            if not anchors:
                LOG.warning("no trust anchors for group %s, skipping %s", candidate.group_name, candidate.id)
                continue
            LOG.info("Attempting Connect with GGC endpoint %s port %d",
                     candidate.host_address, candidate.port)
            for index in range(1, len(anchors) + 1):
                ca_path = anchor_path(self.cfg.output_dir or os.getcwd(), candidate.group_name, index)
                LOG.info("Using CA at %s", ca_path)
                try:
                    session = self.session_factory(candidate, ca_path)
                except (ssl.SSLError, OSError, ValueError) as e:
                    # unreadable or non-PEM anchor: the handshake cannot start
                    LOG.warning("cannot use CA at %s: %s", ca_path, e)
                    session, ok = None, False
                else:
                    ok = session.connect(self.cfg.mqtt_command_timeout)
                metrics.connect_attempts.labels(outcome="accepted" if ok else "failed").inc()
                try:
                    self._sleep(self.cfg.connect_settle_secs)
                except ShutdownRequested:
                    if ok:
                        session.disconnect()
                    raise
                if ok:
                    LOG.info("Connected to GGC %s in group %s", candidate.ggc_name, candidate.group_name)
                    return SessionState(session, candidate, index, ca_path)
                LOG.info("Connect attempt failed with this CA")
            LOG.info("Connect attempt failed for GGC %s in group %s", candidate.ggc_name, candidate.group_name)
        raise ConnectExhausted("no candidate/trust anchor pair accepted the connection")

    def run(self, thing_name: str) -> SessionState:
        return self.connect(self.discover(thing_name))
