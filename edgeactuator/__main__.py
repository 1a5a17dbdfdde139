#!/usr/bin/env python3
# Device entry point: discover a gateway core, connect, then reconcile the shadow forever.
import argparse
import logging
import signal
import sys
import threading

from . import metrics
from .actuation import CommandActuator
from .bootstrap import ConnectBootstrap
from .config import DEFAULT_CONFIG_PATH, load_config
from .discovery import DiscoveryClient
from .errors import EdgeActuatorError, ShutdownRequested
from .reconcile import ReconciliationLoop
from .session import SessionFactory
from .shadow import ShadowSync

LOG = logging.getLogger("edgeactuator")


def run(cfg, stop_event, discovery_client=None, session_factory=None, actuator=None) -> int:
    """Bootstrap and reconcile until shutdown; returns the process exit code."""
    bootstrap = ConnectBootstrap(cfg, discovery_client or DiscoveryClient.from_config(cfg),
                                 session_factory or SessionFactory(cfg), stop_event)
    try:
        session_state = bootstrap.run(cfg.thing_name)
    except ShutdownRequested:
        LOG.info("shutdown before a session was established")
        return ShutdownRequested.exit_code
    except EdgeActuatorError as e:
        LOG.error("bootstrap failed: %s", e)
        return e.exit_code

    shadow = ShadowSync(session_state.session, cfg.thing_name, stop_event)
    loop = ReconciliationLoop.from_config(cfg, session_state.session, shadow,
                                          actuator or CommandActuator(), stop_event)
    rc = 0
    try:
        shadow.subscribe()
        LOG.info("Waiting for an update")
        loop.run()
    except EdgeActuatorError as e:
        LOG.error("reconciliation stopped: %s", e)
        rc = e.exit_code
    finally:
        shadow.close()
        session_state.close()
    LOG.info("Exiting, rc=%d", rc)
    return rc


def build_parser():
    p = argparse.ArgumentParser(prog="edge-actuator",
                                description="Greengrass-discovered shadow actuator")
    p.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="path to actuatorConfig.json")
    p.add_argument("--log-level", default=None, help="override configured log level")
    return p


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=(args.log_level or "INFO").upper(),
                        format="%(asctime)s %(levelname)s %(message)s")
    try:
        cfg = load_config(args.config)
    except EdgeActuatorError as e:
        LOG.error("%s", e)
        return e.exit_code
    if not args.log_level:
        logging.getLogger().setLevel(cfg.log_level.upper())

    stop_event = threading.Event()

    def graceful_exit(signum, frame):
        LOG.info("signal %d received, stopping", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, graceful_exit)
    signal.signal(signal.SIGINT, graceful_exit)

    metrics.serve(cfg.metrics_port)
    return run(cfg, stop_event)


if __name__ == "__main__":
    sys.exit(main())
