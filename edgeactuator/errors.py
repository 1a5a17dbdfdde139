# Error taxonomy for the bootstrap and reconciliation layers.
# Each terminal condition carries its own process exit code; 0 is a clean stop.


class EdgeActuatorError(Exception):
    exit_code = 1


class ConfigError(EdgeActuatorError):
    exit_code = 2


class TransientNetwork(EdgeActuatorError):
    """Retryable within a bounded budget."""
    exit_code = 3


class DiscoveryFailed(TransientNetwork):
    pass


class NoRegistration(EdgeActuatorError):
    """The device identity has no connectivity information; operator action required."""
    exit_code = 10


class NoInformationPresent(NoRegistration):
    pass


class Exhausted(EdgeActuatorError):
    exit_code = 11


class DiscoveryExhausted(Exhausted):
    exit_code = 11


class ConnectExhausted(Exhausted):
    exit_code = 12


class MalformedData(EdgeActuatorError):
    exit_code = 13


class MalformedDiscoveryData(MalformedData):
    pass


class InvalidToken(MalformedData):
    def __init__(self, token):
        super().__init__(f"invalid actuator token {token!r}")
        self.token = token


class ProtocolRejected(EdgeActuatorError):
    exit_code = 20

    def __init__(self, message, payload=None):
        super().__init__(message)
        self.payload = payload


class SessionLost(EdgeActuatorError):
    exit_code = 21


class ShutdownRequested(EdgeActuatorError):
    exit_code = 0


class ShadowBusy(EdgeActuatorError):
    """A second shadow request was issued while one is still outstanding."""
    exit_code = 30
