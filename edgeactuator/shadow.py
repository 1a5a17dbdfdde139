"""
Device shadow correlator.

Outbound requests (update/get/delete) are fire-and-forget publishes; replies
and deltas come back later on their own topics through the MQTT network
thread. The network thread only classifies an event and drops it into a
single-slot handoff; the reconciliation flow picks it up with
await_response(timeout). There are no per-request tokens: at most one request
is outstanding, enforced by ShadowBusy.
"""
import copy
import enum
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from .errors import ShadowBusy
from .mailbox import HandoffSlot

LOG = logging.getLogger(__name__)

SHADOW_TOPIC = "$aws/things/{thing}/shadow/"
STATE_KEY = "state"
REPORTED_KEY = "reported"
DESIRED_KEY = "desired"


class RequestType(enum.Enum):
    GET = "get"
    UPDATE = "update"
    DELETE = "delete"
    DELTA = "delta-subscribe"


class ResponseOutcome(enum.Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DELTA = "delta"
    TIMEOUT = "timeout"


@dataclass
class ShadowResponse:
    outcome: ResponseOutcome
    request_type: Optional[RequestType]
    payload: Optional[dict] = None


@dataclass
class PendingRequest:
    request_type: RequestType
    issued_at: float = field(default_factory=time.monotonic)
    completed: bool = False


# topic suffix -> (request type, outcome)
INBOUND = {
    "update/accepted": (RequestType.UPDATE, ResponseOutcome.ACCEPTED),
    "update/rejected": (RequestType.UPDATE, ResponseOutcome.REJECTED),
    "update/delta": (RequestType.DELTA, ResponseOutcome.DELTA),
    "get/accepted": (RequestType.GET, ResponseOutcome.ACCEPTED),
    "get/rejected": (RequestType.GET, ResponseOutcome.REJECTED),
    "delete/accepted": (RequestType.DELETE, ResponseOutcome.ACCEPTED),
    "delete/rejected": (RequestType.DELETE, ResponseOutcome.REJECTED),
}


def empty_document():
    return {STATE_KEY: {REPORTED_KEY: {}, DESIRED_KEY: {}}}


def merge_state(dst: dict, src: dict):
    # shadow merge semantics: nested dicts merge, None deletes the key
    for key, value in src.items():
        if value is None:
            dst.pop(key, None)
        elif isinstance(value, dict) and isinstance(dst.get(key), dict):
            merge_state(dst[key], value)
        else:
            dst[key] = copy.deepcopy(value)


class ShadowSync:
    def __init__(self, session, thing_name: str, stop_event: Optional[threading.Event] = None, qos: int = 0):
        self.session = session
        self.thing_name = thing_name
        self.prefix = SHADOW_TOPIC.format(thing=thing_name)
        self.qos = qos
        self.stop_event = stop_event or threading.Event()
        self._slot = HandoffSlot()
        self._pending: Optional[PendingRequest] = None
        self._staged = {STATE_KEY: {REPORTED_KEY: {}}}
        self._server = empty_document()
        session.add_message_handler(self._on_message)

    # -- delivery path (network thread) --

    def _on_message(self, topic: str, payload: bytes):
        if not topic.startswith(self.prefix):
            return
        kind = INBOUND.get(topic[len(self.prefix):])
        if kind is None:
            return
        try:
            body = json.loads(payload)
        except (TypeError, ValueError):
            LOG.warning("dropping malformed shadow payload on %s", topic)
            return
        if not isinstance(body, dict):
            LOG.warning("dropping non-object shadow payload on %s", topic)
            return
        request_type, outcome = kind
        LOG.debug("shadow %s for %s", outcome.value, request_type.value)
        self._slot.deposit(ShadowResponse(outcome, request_type, body), stop=self.stop_event)

    # -- reconciliation flow --

    def subscribe(self):
        self._begin(RequestType.DELTA)
        try:
            for suffix in INBOUND:
                self.session.subscribe(self.prefix + suffix, qos=self.qos)
        finally:
            self._pending = None

    def update_reported_state(self, fragment: dict):
        merge_state(self._staged[STATE_KEY][REPORTED_KEY], fragment)

    def _begin(self, request_type):
        if self._pending is not None:
            raise ShadowBusy(f"{request_type.value} issued while {self._pending.request_type.value} is outstanding")
        self._pending = PendingRequest(request_type)

    def _publish(self, request_type, body):
        self._begin(request_type)
        if not self.session.publish(self.prefix + request_type.value, json.dumps(body), qos=self.qos):
            LOG.warning("shadow %s publish was not accepted by the client", request_type.value)

    def perform_update_async(self):
        self._publish(RequestType.UPDATE, self._staged)

    def perform_get_async(self):
        self._publish(RequestType.GET, {})

    def perform_delete_async(self):
        self._publish(RequestType.DELETE, {})

    @property
    def pending(self) -> Optional[PendingRequest]:
        return self._pending

    def await_response(self, timeout: float) -> ShadowResponse:
        response = self._slot.take(timeout)
        if response is None:
            pending, self._pending = self._pending, None
            return ShadowResponse(ResponseOutcome.TIMEOUT, pending.request_type if pending else None)
        self._absorb(response)
        if (self._pending is not None and response.outcome is not ResponseOutcome.DELTA
                and response.request_type is self._pending.request_type):
            self._pending.completed = True
            self._pending = None
        return response

    def _absorb(self, response: ShadowResponse):
        state = response.payload.get(STATE_KEY)
        if response.outcome is ResponseOutcome.DELTA:
            if isinstance(state, dict):
                merge_state(self._server[STATE_KEY].setdefault(DESIRED_KEY, {}), state)
        elif response.outcome is ResponseOutcome.ACCEPTED:
            if response.request_type is RequestType.GET:
                self._server = empty_document()
            elif response.request_type is RequestType.DELETE:
                self._server = empty_document()
                return
            if isinstance(state, dict):
                merge_state(self._server[STATE_KEY], state)

    def latest_server_document(self) -> dict:
        return copy.deepcopy(self._server)

    def staged_document(self) -> dict:
        return copy.deepcopy(self._staged)

    def close(self):
        self._slot.close()
