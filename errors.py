from typing import Optional


class GatewayError(Exception):
    """Base class for controller communication failures"""


class AuthError(GatewayError):
    """Digest handshake failed"""


class AuthChallengeMissing(AuthError):
    """Challenge request did not return 401 with a usable Digest challenge"""


class AuthTransportError(AuthError):
    """Network-level failure while probing for the challenge"""


class ConnectError(GatewayError):
    """Controller rejected or never answered the authenticated open request"""


class TransportError(GatewayError):
    """HTTP exchange with an opened controller failed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransportTimeout(TransportError):
    """Controller did not answer within the request timeout"""


class ControllerBusy(GatewayError):
    """Another request is in flight against the same controller"""


class ProtocolError(GatewayError):
    """Controller answered, but reported a failure or sent a malformed envelope"""

    def __init__(self, message: str, packet_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.packet_id = packet_id


class ControllerNotConfigured(GatewayError):
    """Station has no controller endpoint"""


class StationNotFound(GatewayError):
    """Unknown station id"""


class RefillRejected(Exception):
    """Business-rule violation for a refill preset (not a device fault)"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
