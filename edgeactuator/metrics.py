# Prometheus metrics for the bootstrap and reconciliation loop.
import logging

from prometheus_client import Counter, Gauge, start_http_server

LOG = logging.getLogger(__name__)

discovery_attempts = Counter("edge_actuator_discovery_attempts_total",
                             "Discovery attempts by outcome", ["outcome"])
connect_attempts = Counter("edge_actuator_connect_attempts_total",
                           "Secure connect attempts by outcome", ["outcome"])
shadow_responses = Counter("edge_actuator_shadow_responses_total",
                           "Shadow responses consumed by the loop", ["outcome"])
actuations = Counter("edge_actuator_actuations_total",
                     "Actuation calls by result", ["result"])
loop_state = Gauge("edge_actuator_loop_state", "Current reconciliation state", ["state"])


def set_loop_state(state_name, all_states):
    for name in all_states:
        loop_state.labels(state=name).set(1 if name == state_name else 0)


def serve(port):
    if port:
        start_http_server(port)  # exposes /metrics for Prometheus
        LOG.info("metrics endpoint on :%d", port)
