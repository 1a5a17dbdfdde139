"""
Reconciliation loop: keeps the actuator and the shadow's reported state in
line with the desired state pushed by the control plane.

    IDLE -> AWAITING_INITIAL_ACK -> AWAITING_DELTA -> ACTUATING
         -> AWAITING_UPDATE_ACK -> AWAITING_DELTA -> ...

Any state goes to STOPPED on shutdown or session loss; a rejected update is
fatal. current_state changes only in ACTUATING, after the actuator call and
before the reported update is published, so a duplicate delta for the same
token arriving while the ack is pending never actuates twice.
"""
import enum
import json
import logging
import threading
from typing import Optional

from . import metrics
from .actuation import resolve
from .errors import InvalidToken, ProtocolRejected, SessionLost
from .shadow import STATE_KEY, RequestType, ResponseOutcome

LOG = logging.getLogger(__name__)

TOKEN_KEY = "myState"


class LoopState(enum.Enum):
    IDLE = "idle"
    AWAITING_INITIAL_ACK = "awaiting_initial_ack"
    AWAITING_DELTA = "awaiting_delta"
    ACTUATING = "actuating"
    AWAITING_UPDATE_ACK = "awaiting_update_ack"
    STOPPED = "stopped"


class ReconciliationLoop:
    def __init__(self, session, shadow, actuator, metering_topic="/topic/state",
                 initial_state="off", action_timeout=20.0, post_ack_settle=1.0,
                 stop_event: Optional[threading.Event] = None):
        self.session = session
        self.shadow = shadow
        self.actuator = actuator
        self.metering_topic = metering_topic
        self.current_state = initial_state
        self.action_timeout = action_timeout
        self.post_ack_settle = post_ack_settle
        self.stop_event = stop_event or threading.Event()
        self.state = LoopState.IDLE
        self.error: Optional[Exception] = None
        self._target: Optional[str] = None
        self._deferred: Optional[str] = None

    @classmethod
    def from_config(cls, cfg, session, shadow, actuator, stop_event=None):
        return cls(session, shadow, actuator, metering_topic=cfg.metering_topic,
                   initial_state=cfg.initial_state, action_timeout=cfg.mqtt_command_timeout,
                   post_ack_settle=cfg.post_ack_settle_secs, stop_event=stop_event)

    def _goto(self, state):
        if state is not self.state:
            LOG.debug("%s -> %s", self.state.value, state.value)
        self.state = state
        metrics.set_loop_state(state.value, [s.value for s in LoopState])

    def _fail(self, error):
        self.error = error
        self._goto(LoopState.STOPPED)
        raise error

    @staticmethod
    def _delta_token(response):
        # only this delta counts; older desired values in the mirror do not
        state = (response.payload or {}).get(STATE_KEY)
        token = state.get(TOKEN_KEY) if isinstance(state, dict) else None
        return token if isinstance(token, str) else None

    def _send_reported(self, token):
        self.shadow.update_reported_state({TOKEN_KEY: token})
        LOG.info("sending reported state %s", json.dumps(self.shadow.staged_document()))
        self.shadow.perform_update_async()

    def _await(self):
        response = self.shadow.await_response(self.action_timeout)
        metrics.shadow_responses.labels(outcome=response.outcome.value).inc()
        return response

    def _update_accepted(self):
        # settle so trailing messages of this exchange arrive before the next wait
        self.stop_event.wait(self.post_ack_settle)
        deferred, self._deferred = self._deferred, None
        if deferred is not None and deferred != self.current_state:
            self._target = deferred
            self._goto(LoopState.ACTUATING)
        else:
            self._goto(LoopState.AWAITING_DELTA)

    def _defer_delta(self, response):
        token = self._delta_token(response)
        if token is None:
            return
        if token == self.current_state:
            if self._deferred is not None:
                LOG.info("desired state back to %s, dropping deferred %s", token, self._deferred)
            self._deferred = None
        else:
            LOG.info("delta %s received while waiting for an ack, deferring", token)
            self._deferred = token

    def step(self) -> LoopState:
        if self.state is LoopState.STOPPED:
            return self.state
        if self.stop_event.is_set():
            LOG.info("shutdown requested")
            self._goto(LoopState.STOPPED)
            return self.state
        if self.session.lost.is_set():
            self._fail(SessionLost("session to the gateway was lost"))

        handler = {
            LoopState.IDLE: self._on_idle,
            LoopState.AWAITING_INITIAL_ACK: self._on_awaiting_ack,
            LoopState.AWAITING_DELTA: self._on_awaiting_delta,
            LoopState.ACTUATING: self._on_actuating,
            LoopState.AWAITING_UPDATE_ACK: self._on_awaiting_ack,
        }[self.state]
        handler()
        return self.state

    def run(self):
        while self.state is not LoopState.STOPPED:
            self.step()

    def _on_idle(self):
        LOG.info("sending initial state %s", self.current_state)
        self._send_reported(self.current_state)
        self._goto(LoopState.AWAITING_INITIAL_ACK)

    def _on_awaiting_ack(self):
        initial = self.state is LoopState.AWAITING_INITIAL_ACK
        response = self._await()
        if response.outcome is ResponseOutcome.DELTA:
            self._defer_delta(response)
        elif response.outcome is ResponseOutcome.TIMEOUT:
            LOG.info("no response to %s update yet", "initial" if initial else "reported")
        elif response.request_type is not RequestType.UPDATE:
            LOG.debug("ignoring %s %s", response.request_type.value, response.outcome.value)
        elif response.outcome is ResponseOutcome.REJECTED:
            LOG.error("shadow update rejected: %s", response.payload)
            what = "initial state" if initial else "reported state"
            self._fail(ProtocolRejected(f"{what} update rejected", response.payload))
        else:
            LOG.info("shadow update accepted")
            self._update_accepted()

    def _on_awaiting_delta(self):
        response = self._await()
        if response.outcome is not ResponseOutcome.DELTA:
            if response.outcome is not ResponseOutcome.TIMEOUT:
                LOG.debug("ignoring stale %s", response.outcome.value)
            return
        token = self._delta_token(response)
        if token is None:
            LOG.debug("delta without %s, ignoring", TOKEN_KEY)
        elif token == self.current_state:
            LOG.debug("delta %s matches current state, nothing to do", token)
        else:
            self._target = token
            self._goto(LoopState.ACTUATING)

    def _on_actuating(self):
        token, self._target = self._target, None
        try:
            plan = resolve(token)
        except InvalidToken as e:
            LOG.warning("%s; keeping state %s", e, self.current_state)
            metrics.actuations.labels(result="invalid").inc()
            self._goto(LoopState.AWAITING_DELTA)
            return
        try:
            if not self.actuator.apply(token):
                LOG.warning("actuator reported failure for %s", token)
        except Exception:
            LOG.exception("actuator raised for %s", token)
        self.current_state = token
        if self.session.publish(self.metering_topic, json.dumps({"state": plan.telemetry_state})):
            LOG.info("published state %s to %s", plan.telemetry_state, self.metering_topic)
        self._send_reported(plan.reported_token)
        self._goto(LoopState.AWAITING_UPDATE_ACK)
