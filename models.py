from typing import Dict, List, Optional, Any
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime


class StationStatus(str, Enum):
    """
    Station states:
    - IDLE: controller reachable, nothing dispensing, no open alarm
    - DISPENSING: at least one hose reports a delivery volume > 0
    - ALARM: at least one alarm is active and not acknowledged
    - OFFLINE: operator/persisted state, station not in service
    - MAINTENANCE: operator-set, takes precedence over telemetry
    """
    IDLE = "IDLE"
    DISPENSING = "DISPENSING"
    ALARM = "ALARM"
    OFFLINE = "OFFLINE"
    MAINTENANCE = "MAINTENANCE"


class ControllerScheme(str, Enum):
    HTTP = "HTTP"
    HTTPS = "HTTPS"


class PresetKind(str, Enum):
    VOLUME = "VOLUME"
    AMOUNT = "AMOUNT"


class StopReason(str, Enum):
    TARGET_REACHED = "TARGET_REACHED"
    USER_STOPPED = "USER_STOPPED"
    EMERGENCY_STOP = "EMERGENCY_STOP"


# ───────────────────────────── Controller / protocol ─────────────────────────────

class ControllerEndpoint(BaseModel):
    """Connection settings of one PTS-2 controller"""
    model_config = ConfigDict(frozen=True)

    host: str = Field(..., min_length=1, description="Controller host name or IP")
    port: int = Field(..., ge=1, le=65535, description="HTTP(S) port")
    scheme: ControllerScheme = Field(ControllerScheme.HTTP, description="HTTP or HTTPS")
    login: str = Field("", description="Digest user name")
    password: str = Field("", description="Digest password")

    @property
    def base_url(self) -> str:
        return f"{self.scheme.value.lower()}://{self.host}:{self.port}"

    @property
    def identity(self) -> tuple:
        return (self.scheme.value, self.host.lower(), self.port)


class DigestChallenge(BaseModel):
    """Parameters of a WWW-Authenticate: Digest challenge"""
    realm: str
    nonce: str
    qop: str = "auth"
    opaque: Optional[str] = None
    algorithm: Optional[str] = None


class DigestCredential(BaseModel):
    """
    Credential for one authenticated request.

    nonce_count is incremented for every request signed with the same
    nonce; a fresh challenge starts a new credential at 1.
    """
    username: str
    realm: str
    nonce: str
    uri: str
    qop: str
    nonce_count: int = Field(1, ge=1)
    client_nonce: str
    computed_response: str
    algorithm: str = "MD5"
    algorithm_explicit: bool = False
    opaque: Optional[str] = None

    @property
    def nc(self) -> str:
        return f"{self.nonce_count:08x}"

    def authorization_header(self) -> str:
        parts = [
            f'username="{self.username}"',
            f'realm="{self.realm}"',
            f'nonce="{self.nonce}"',
            f'uri="{self.uri}"',
        ]
        if self.algorithm_explicit:
            parts.append(f"algorithm={self.algorithm}")
        parts += [
            f"qop={self.qop}",
            f"nc={self.nc}",
            f'cnonce="{self.client_nonce}"',
            f'response="{self.computed_response}"',
        ]
        if self.opaque is not None:
            parts.append(f'opaque="{self.opaque}"')
        return "Digest " + ", ".join(parts)


class ProtocolPacket(BaseModel):
    """One jsonPTS packet; response packets may carry a failure result"""
    id: int = Field(..., description="Packet id, echoed by the controller")
    type: str = Field(..., description="Command name, e.g. GetTanks")
    data: Optional[Dict[str, Any]] = Field(None, description="Command specific payload")
    failed: bool = Field(False, description="Controller reported a failure for this packet")
    error_message: Optional[str] = Field(None, description="Controller error text")

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {"Id": self.id, "Type": self.type}
        if self.data is not None:
            wire["Data"] = self.data
        return wire


class ProtocolEnvelope(BaseModel):
    protocol: str = Field("jsonPTS", description="Fixed protocol literal")
    packets: List[ProtocolPacket] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        return {"Protocol": self.protocol, "Packets": [p.to_wire() for p in self.packets]}


# ───────────────────────────── Live telemetry ─────────────────────────────

class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TankSnapshot(_WireModel):
    tank_index: int = Field(..., alias="Tank")
    product_code: int = Field(..., alias="Product")
    volume_litres: float = Field(..., alias="Volume")
    tc_volume_litres: float = Field(0.0, alias="TCVolume")
    ullage_litres: float = Field(0.0, alias="Ullage")
    height_mm: float = Field(0.0, alias="Height")
    water_mm: float = Field(0.0, alias="Water")
    temperature_c: float = Field(0.0, alias="Temp")


class DeliverySnapshot(_WireModel):
    hose_index: int = Field(..., alias="Hose")
    product_code: int = Field(0, alias="Product")
    volume_litres: float = Field(..., alias="Volume")
    amount: float = Field(0.0, alias="Amount")
    unit_price: float = Field(0.0, alias="Price")


class AlarmSnapshot(_WireModel):
    alarm_id: int = Field(..., alias="Id")
    priority: int = Field(0, alias="Priority")
    active: bool = Field(..., alias="Active")
    acknowledged: bool = Field(False, alias="Acknowledged")
    text: str = Field("", alias="Text")


class TotalizerSnapshot(_WireModel):
    hose_index: int = Field(..., alias="Hose")
    product_code: int = Field(0, alias="Product")
    volume_litres: float = Field(..., alias="Volume")
    amount: float = Field(0.0, alias="Amount")


class ProductPrice(_WireModel):
    product_code: int = Field(..., alias="Product")
    price: float = Field(..., alias="Price")


class ControllerDateTime(BaseModel):
    date: str = ""
    time: str = ""


# ───────────────────────────── Persisted records ─────────────────────────────

class StationRecord(BaseModel):
    """Persisted station row"""
    station_id: str = Field(..., description="Station identifier")
    name: str = Field("", description="Station display name")
    address: Optional[str] = Field(None, description="Street address")
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: str = "Asia/Kuala_Lumpur"
    status: StationStatus = Field(StationStatus.IDLE, description="Last known status")
    last_heartbeat: Optional[datetime] = Field(None, description="Last successful controller contact")


class TankStatus(BaseModel):
    """Tank level row, either persisted or derived from a live snapshot"""
    tank_id: str
    station_id: str
    product: str = Field(..., description="Product name, e.g. RON95")
    level_litres: float
    capacity_litres: float
    temperature_c: Optional[float] = None
    low_level_alarm: bool = False
    high_level_alarm: bool = False
    timestamp: Optional[datetime] = None


class Pricing(BaseModel):
    pricing_id: str
    station_id: str
    product: str
    unit_price: float = Field(..., gt=0, description="Price per litre")
    currency: str = "MYR"
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None


class StationConfig(BaseModel):
    station_id: str
    max_dispense_volume: float = Field(..., gt=0, description="Litres")
    max_dispense_amount: float = Field(..., gt=0, description="Currency units")
    maintenance_mode: bool = False
    enabled: bool = True
    emergency_stop_enabled: bool = True
    auto_stop_on_target_reached: bool = True


# ───────────────────────────── Gateway results ─────────────────────────────

class ResolvedStatus(BaseModel):
    """
    Authoritative station status

    Example:
    {
        "station_id": "ST-001",
        "status": "DISPENSING",
        "controller_reachable": true,
        "last_heartbeat": "2025-07-05T12:34:56.789Z",
        "current_transaction": "TX-42",
        "alarms": [],
        "deliveries": [{"hose_index": 1, "volume_litres": 3.2, ...}]
    }
    """
    station_id: str
    status: StationStatus
    controller_reachable: bool
    last_heartbeat: Optional[datetime] = None
    current_transaction: Optional[str] = None
    alarms: List[AlarmSnapshot] = Field(default_factory=list, description="Active alarms")
    deliveries: List[DeliverySnapshot] = Field(default_factory=list)


class TankReport(BaseModel):
    station_id: str
    controller_reachable: bool
    source: str = Field(..., description="'controller' or 'persisted'")
    tanks: List[TankStatus] = Field(default_factory=list)


class StationDetail(BaseModel):
    station: StationRecord
    status: ResolvedStatus
    tanks: TankReport
    pricing: List[Pricing] = Field(default_factory=list)
    config: Optional[StationConfig] = None
    available_products: List[str] = Field(default_factory=list)


# ───────────────────────────── Refill ─────────────────────────────

class RefillPreset(BaseModel):
    product: str = Field(..., description="Product name, e.g. RON95")
    preset_kind: PresetKind
    preset_value: float = Field(..., gt=0, description="Litres or currency units")


class RefillLimits(BaseModel):
    min_volume_litres: float = Field(1.0, gt=0)
    min_amount: float = Field(5.0, gt=0)
    max_volume_litres: float = Field(100.0, gt=0)
    max_amount: float = Field(500.0, gt=0)
    tank_available_litres: Optional[float] = Field(None, description="Level of the selected tank")
    tank_capacity_litres: Optional[float] = Field(None, description="Capacity of the selected tank")


class RefillQuote(BaseModel):
    product: str = ""
    preset_kind: PresetKind = PresetKind.VOLUME
    target_volume_litres: float = Field(..., gt=0)
    target_amount: float = Field(..., gt=0)
    unit_price: float = Field(..., gt=0)
    hold_amount: float = Field(..., gt=0, description="Wallet pre-authorization incl. buffer")
    advisories: List[str] = Field(default_factory=list, description="Non-fatal warnings")


class RefillOutcome(BaseModel):
    actual_volume_litres: float
    actual_amount: float
    hold_amount: float
    refund_amount: float
    stop_reason: StopReason


class DispenseProgress(BaseModel):
    current_volume_litres: float
    current_amount: float
    target_volume_litres: float
    target_amount: float
    progress_percent: float = Field(..., ge=0, le=100)
    hold_remaining: float = Field(..., ge=0)


# ───────────────────────────── API bodies ─────────────────────────────

class SettleRequest(BaseModel):
    quote: RefillQuote
    actual_volume_litres: float = Field(..., ge=0)
    stop_reason: StopReason = StopReason.TARGET_REACHED


class ProgressRequest(BaseModel):
    quote: RefillQuote
    dispensed_volume_litres: float = Field(..., ge=0)


class CommandResponse(BaseModel):
    """Control command response"""
    success: bool = Field(..., description="Command execution success")
    message: str = Field(..., description="Response message")
    data: Optional[Dict[str, Any]] = Field(None, description="Response data")
    timestamp: datetime = Field(..., description="Response timestamp")
