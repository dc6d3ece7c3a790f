import itertools
import json
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple, Type, TypeVar, Union

import requests
from pydantic import BaseModel, ValidationError

from config import Settings
from digest_auth import DigestSession
from errors import (
    ConnectError,
    ControllerBusy,
    ProtocolError,
    TransportError,
    TransportTimeout,
)
from models import (
    AlarmSnapshot,
    ControllerDateTime,
    ControllerEndpoint,
    DeliverySnapshot,
    PresetKind,
    ProductPrice,
    ProtocolEnvelope,
    ProtocolPacket,
    TankSnapshot,
    TotalizerSnapshot,
)

_Item = TypeVar("_Item", bound=BaseModel)


class PTSProtocol:
    """
    jsonPTS envelope framing for PTS-2 controllers.

    Request:  {"Protocol": "jsonPTS", "Packets": [{"Id": 1, "Type": "GetTanks"}]}
    Response: same shape; a packet either carries "Data" or a failure
              ("Result": "Fail" / "Error": true) with an error message.
    """

    PROTOCOL = "jsonPTS"

    # Read-only commands
    CMD_GET_CONTROLLER_TYPE = "GetControllerType"
    CMD_GET_DATE_TIME = "GetDateTime"
    CMD_GET_PRODUCT_PRICES = "GetProductPrices"
    CMD_GET_TANKS = "GetTanks"
    CMD_GET_TOTALIZERS = "GetTotalizers"
    CMD_GET_DELIVERIES = "GetDeliveries"
    CMD_GET_ALARMS = "GetAlarms"

    # Control commands (device-side effects, never retried)
    CMD_AUTHORIZE = "Authorize"
    CMD_STOP = "Stop"
    CMD_EMERGENCY_STOP = "EmergencyStop"
    CMD_CLEAR = "Clear"

    READ_COMMANDS = frozenset({
        CMD_GET_CONTROLLER_TYPE,
        CMD_GET_DATE_TIME,
        CMD_GET_PRODUCT_PRICES,
        CMD_GET_TANKS,
        CMD_GET_TOTALIZERS,
        CMD_GET_DELIVERIES,
        CMD_GET_ALARMS,
    })

    PRODUCT_NAMES = {
        1: "RON95",
        2: "RON97",
        3: "DIESEL",
        4: "PREMIUM_DIESEL",
    }
    UNKNOWN_PRODUCT = "UNKNOWN"

    @staticmethod
    def product_name(code: int) -> str:
        """Map a controller product code to its name; unmapped codes give UNKNOWN"""
        return PTSProtocol.PRODUCT_NAMES.get(code, PTSProtocol.UNKNOWN_PRODUCT)

    @staticmethod
    def build_envelope(packet_id: int, command: str, data: Optional[Dict[str, Any]] = None) -> ProtocolEnvelope:
        return ProtocolEnvelope(packets=[ProtocolPacket(id=packet_id, type=command, data=data)])

    @staticmethod
    def encode(envelope: ProtocolEnvelope) -> str:
        return json.dumps(envelope.to_wire(), separators=(",", ":"))

    @staticmethod
    def decode(body: Union[str, bytes]) -> ProtocolEnvelope:
        """Parse a response body into a ProtocolEnvelope, raising ProtocolError on malformed input"""
        try:
            raw = json.loads(body)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Response is not valid JSON: {e}") from e

        if not isinstance(raw, dict):
            raise ProtocolError("Response envelope is not an object")
        protocol = raw.get("Protocol", PTSProtocol.PROTOCOL)
        if protocol != PTSProtocol.PROTOCOL:
            raise ProtocolError(f"Unexpected protocol: {protocol!r}")
        packets = raw.get("Packets")
        if not isinstance(packets, list):
            raise ProtocolError("Response envelope has no Packets list")

        parsed: List[ProtocolPacket] = []
        for item in packets:
            if not isinstance(item, dict) or not isinstance(item.get("Id"), int):
                raise ProtocolError(f"Malformed response packet: {item!r}")
            failed = item.get("Result") == "Fail" or item.get("Error") is True
            data = item.get("Data")
            parsed.append(ProtocolPacket(
                id=item["Id"],
                type=str(item.get("Type", "")),
                data=data if isinstance(data, dict) else None,
                failed=failed,
                error_message=(item.get("ErrorMessage") or item.get("Message") or "Unknown error") if failed else None,
            ))
        return ProtocolEnvelope(protocol=protocol, packets=parsed)

    @staticmethod
    def first_failure(envelope: ProtocolEnvelope) -> Optional[ProtocolPacket]:
        for packet in envelope.packets:
            if packet.failed:
                return packet
        return None

    @staticmethod
    def correlate(request: ProtocolEnvelope, response: ProtocolEnvelope) -> Dict[int, ProtocolPacket]:
        """Match response packets to request packets by Id"""
        by_id = {packet.id: packet for packet in response.packets}
        for packet in request.packets:
            if packet.id not in by_id:
                raise ProtocolError(f"No response for packet {packet.id} ({packet.type})", packet.id)
        return by_id

    @staticmethod
    def parse_items(data: Optional[Dict[str, Any]], key: str, model: Type[_Item]) -> List[_Item]:
        if data is None or key not in data:
            raise ProtocolError(f"Response data has no {key!r} list")
        items = data[key]
        if not isinstance(items, list):
            raise ProtocolError(f"{key!r} is not a list")
        try:
            return [model.model_validate(item) for item in items]
        except ValidationError as e:
            raise ProtocolError(f"Malformed {key!r} entry: {e}") from e


class ControllerGate:
    """
    One session at a time per controller.

    A transport holds the gate from open() to close(); the owning thread
    may re-enter it for each exchange.
    """

    def __init__(self, key: Tuple, busy_wait: Optional[float] = None):
        self.key = key
        self.busy_wait = busy_wait
        self._lock = threading.RLock()

    def acquire(self):
        if self.busy_wait is None:
            acquired = self._lock.acquire()
        elif self.busy_wait == 0:
            acquired = self._lock.acquire(blocking=False)
        else:
            acquired = self._lock.acquire(timeout=self.busy_wait)
        if not acquired:
            raise ControllerBusy(f"Controller {self.key} is busy")

    def release(self):
        self._lock.release()

    @contextmanager
    def hold(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()


class ControllerGateRegistry:
    """Gates keyed by controller identity, scoped to one gateway instance"""

    def __init__(self, busy_wait: Optional[float] = None):
        self.busy_wait = busy_wait
        self._gates: Dict[Tuple, ControllerGate] = {}
        self._lock = threading.Lock()

    def gate_for(self, endpoint: ControllerEndpoint) -> ControllerGate:
        with self._lock:
            gate = self._gates.get(endpoint.identity)
            if gate is None:
                gate = ControllerGate(endpoint.identity, self.busy_wait)
                self._gates[endpoint.identity] = gate
            return gate


class ControllerTransport:
    """
    Authenticated jsonPTS channel to one controller.

    The controller's gate is held from open() until close(), so a second
    caller waits (or gets ControllerBusy) instead of starting its own
    handshake. Each exchange must finish within the request timeout; the
    transport itself never retries.
    """

    # Reads return as soon as any byte arrives; the deadline is checked between reads
    READ_CHUNK_SIZE = 1

    def __init__(
        self,
        endpoint: ControllerEndpoint,
        settings: Optional[Settings] = None,
        gate: Optional[ControllerGate] = None,
        http: Optional[requests.Session] = None,
    ):
        settings = settings or Settings()
        self.endpoint = endpoint
        self.path = settings.jsonpts_path
        self.timeout = settings.request_timeout
        self.verify = settings.verify_tls
        self._owns_http = http is None
        self.http = http or requests.Session()
        self.digest = DigestSession(self.http, settings.digest_algorithm, self.timeout, self.verify)
        self.gate = gate or ControllerGate(endpoint.identity, settings.controller_busy_wait)
        self._credential = None
        self._holds_gate = False
        self.logger = logging.getLogger(f"ControllerTransport-{endpoint.host}:{endpoint.port}")

    @property
    def url(self) -> str:
        return f"{self.endpoint.base_url}{self.path}"

    @property
    def is_open(self) -> bool:
        return self._credential is not None

    def __enter__(self) -> "ControllerTransport":
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def open(self) -> "ControllerTransport":
        """Digest handshake followed by an empty-packets request to confirm the credential"""
        if not self._holds_gate:
            self.gate.acquire()
            self._holds_gate = True

        try:
            self._handshake()
        except Exception:
            self._release_gate()
            raise
        return self

    def _handshake(self):
        self._credential = None
        self.logger.info(f"Opening session to {self.url}")
        credential = self.digest.authenticate(self.endpoint, "POST", self.path)

        try:
            response, _ = self._post(ProtocolEnvelope(), credential)
        except TransportTimeout:
            self.logger.error(f"Authenticated open request to {self.url} timed out")
            raise
        except TransportError as e:
            self.logger.error(f"Authenticated open request to {self.url} failed: {e}")
            raise ConnectError(f"PTS connection failed: {e}") from e

        if not response.ok:
            self.logger.error(f"Controller refused session: HTTP {response.status_code}")
            raise ConnectError(f"PTS connection failed: HTTP {response.status_code}")

        self._credential = credential
        self.logger.info(f"Digest session open to {self.url}")

    def reopen(self) -> "ControllerTransport":
        self._credential = None
        return self.open()

    def close(self):
        self._credential = None
        self._release_gate()
        if self._owns_http:
            self.http.close()
        self.logger.debug(f"Session to {self.url} closed")

    def _release_gate(self):
        if self._holds_gate:
            self._holds_gate = False
            self.gate.release()

    def send(self, envelope: ProtocolEnvelope) -> ProtocolEnvelope:
        if self._credential is None:
            raise ConnectError("Transport is not open")

        with self.gate.hold():
            credential = self.digest.advance(self._credential, self.endpoint, "POST", self.path)
            self._credential = credential

            self.logger.debug(f"TX {PTSProtocol.encode(envelope)}")
            response, body = self._post(envelope, credential)

            if response.status_code == 401:
                self._credential = None
                self.logger.warning("Controller rejected digest credential (HTTP 401)")
                raise TransportError("Controller rejected credential: HTTP 401", 401)
            if not response.ok:
                self.logger.error(f"PTS request failed: HTTP {response.status_code}")
                raise TransportError(f"PTS request failed: HTTP {response.status_code}", response.status_code)

            self.logger.debug(f"RX {body.decode('utf-8', errors='replace')}")
            reply = PTSProtocol.decode(body)

        failed = PTSProtocol.first_failure(reply)
        if failed is not None:
            self.logger.error(f"PTS packet {failed.id} ({failed.type}) failed: {failed.error_message}")
            raise ProtocolError(failed.error_message, failed.id)

        PTSProtocol.correlate(envelope, reply)
        return reply

    def _post(self, envelope: ProtocolEnvelope, credential) -> Tuple[requests.Response, bytes]:
        """POST one envelope; the whole exchange, body included, must finish before the deadline"""
        deadline = time.monotonic() + self.timeout
        headers = {
            "Authorization": credential.authorization_header(),
            "Content-Type": "application/json",
        }
        try:
            response = self.http.post(
                self.url,
                data=PTSProtocol.encode(envelope),
                headers=headers,
                timeout=self.timeout,
                verify=self.verify,
                stream=True,
            )
        except requests.Timeout as e:
            raise TransportTimeout(f"PTS request timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise TransportError(f"PTS request failed: {e}") from e

        try:
            return response, self._read_body(response, deadline)
        finally:
            response.close()

    def _read_body(self, response: requests.Response, deadline: float) -> bytes:
        body = bytearray()
        try:
            for chunk in response.iter_content(chunk_size=self.READ_CHUNK_SIZE):
                body.extend(chunk)
                if time.monotonic() > deadline:
                    self.logger.error(f"Reply from {self.url} still incomplete after {self.timeout}s, dropping it")
                    raise TransportTimeout(f"PTS reply not complete after {self.timeout}s")
        except requests.RequestException as e:
            if time.monotonic() > deadline:
                raise TransportTimeout(f"PTS reply not complete after {self.timeout}s") from e
            raise TransportError(f"PTS reply read failed: {e}") from e
        return bytes(body)


class PTSProtocolClient:
    """Typed jsonPTS operations over an injected ControllerTransport"""

    def __init__(self, transport: ControllerTransport):
        self.transport = transport
        self._ids = itertools.count(1)
        self._ids_lock = threading.Lock()
        self.logger = logging.getLogger("PTSProtocolClient")

    def _next_id(self) -> int:
        with self._ids_lock:
            return next(self._ids)

    def _exchange(self, command: str, data: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        envelope = PTSProtocol.build_envelope(self._next_id(), command, data)
        reply = self.transport.send(envelope)
        packet_id = envelope.packets[0].id
        return PTSProtocol.correlate(envelope, reply)[packet_id].data

    def _read(self, command: str) -> Optional[Dict[str, Any]]:
        # Idempotent: one retry with a fresh handshake on transport-level failure
        try:
            return self._exchange(command)
        except (TransportError, ConnectError) as e:
            self.logger.warning(f"{command} failed ({e}); re-authenticating and retrying once")
            self.transport.reopen()
            return self._exchange(command)

    def _control(self, command: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.logger.info(f"Sending control command {command} {data or ''}")
        try:
            self._exchange(command, data)
        except TransportTimeout:
            self.logger.error(f"{command} timed out; outcome unknown, re-query deliveries/alarms before retrying")
            raise

    @staticmethod
    def _check_hose(hose: int):
        if hose < 1:
            raise ValueError(f"Invalid hose number: {hose}")

    # ────────── read-only ──────────
    def get_controller_type(self) -> str:
        data = self._read(PTSProtocol.CMD_GET_CONTROLLER_TYPE) or {}
        return data.get("Type") or "Unknown"

    def get_date_time(self) -> ControllerDateTime:
        data = self._read(PTSProtocol.CMD_GET_DATE_TIME) or {}
        return ControllerDateTime(date=data.get("Date", ""), time=data.get("Time", ""))

    def get_product_prices(self) -> List[ProductPrice]:
        data = self._read(PTSProtocol.CMD_GET_PRODUCT_PRICES)
        return PTSProtocol.parse_items(data, "Prices", ProductPrice)

    def get_tanks(self) -> List[TankSnapshot]:
        data = self._read(PTSProtocol.CMD_GET_TANKS)
        return PTSProtocol.parse_items(data, "Tanks", TankSnapshot)

    def get_totalizers(self) -> List[TotalizerSnapshot]:
        data = self._read(PTSProtocol.CMD_GET_TOTALIZERS)
        return PTSProtocol.parse_items(data, "Totalizers", TotalizerSnapshot)

    def get_deliveries(self) -> List[DeliverySnapshot]:
        data = self._read(PTSProtocol.CMD_GET_DELIVERIES)
        return PTSProtocol.parse_items(data, "Deliveries", DeliverySnapshot)

    def get_alarms(self) -> List[AlarmSnapshot]:
        data = self._read(PTSProtocol.CMD_GET_ALARMS)
        return PTSProtocol.parse_items(data, "Alarms", AlarmSnapshot)

    # ────────── control ──────────
    def authorize_hose(self, hose: int, kind: Union[PresetKind, str], value: float) -> None:
        """Authorize a hose for a volume (litres) or amount preset"""
        self._check_hose(hose)
        if value <= 0:
            raise ValueError(f"Preset value must be positive: {value}")
        kind_name = kind.value if isinstance(kind, PresetKind) else str(kind).upper()
        if kind_name not in (PresetKind.VOLUME.value, PresetKind.AMOUNT.value):
            raise ValueError(f"Invalid preset kind: {kind}")
        self._control(PTSProtocol.CMD_AUTHORIZE, {
            "Hose": hose,
            "Type": kind_name.capitalize(),
            "Value": value,
        })

    def stop_delivery(self, hose: int) -> None:
        self._check_hose(hose)
        self._control(PTSProtocol.CMD_STOP, {"Hose": hose})

    def emergency_stop(self) -> None:
        self._control(PTSProtocol.CMD_EMERGENCY_STOP)

    def clear_delivery(self, hose: int) -> None:
        self._check_hose(hose)
        self._control(PTSProtocol.CMD_CLEAR, {"Hose": hose})
