import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional

from config import Settings
from errors import ControllerNotConfigured, GatewayError, ProtocolError, RefillRejected, StationNotFound
from models import (
    AlarmSnapshot,
    ControllerEndpoint,
    DeliverySnapshot,
    PresetKind,
    RefillLimits,
    RefillPreset,
    RefillQuote,
    ResolvedStatus,
    StationConfig,
    StationDetail,
    StationRecord,
    StationStatus,
    TankReport,
    TankSnapshot,
    TankStatus,
)
from pts_controller import ControllerGateRegistry, ControllerTransport, PTSProtocol, PTSProtocolClient
from refill_calculator import REASON_QUOTE_MISMATCH, RefillCalculator
from station_store import StationRepository

ClientFactory = Callable[[ControllerEndpoint], PTSProtocolClient]

SOURCE_CONTROLLER = "controller"
SOURCE_PERSISTED = "persisted"


class StationStatusResolver:
    """
    Combines live controller telemetry with persisted station data.

    Controller failures on these read paths never reach the caller: the
    persisted data is returned with controller_reachable=False instead.
    """

    # Persisted states that live telemetry does not override
    OPERATOR_STATES = (StationStatus.MAINTENANCE, StationStatus.OFFLINE)

    def __init__(
        self,
        repository: StationRepository,
        settings: Optional[Settings] = None,
        gates: Optional[ControllerGateRegistry] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.repository = repository
        self.settings = settings or Settings()
        self.gates = gates or ControllerGateRegistry(self.settings.controller_busy_wait)
        self.client_factory = client_factory or self._open_client
        self.logger = logging.getLogger("StationStatusResolver")

    # ────────── controller sessions ──────────
    def _open_client(self, endpoint: ControllerEndpoint) -> PTSProtocolClient:
        transport = ControllerTransport(endpoint, self.settings, self.gates.gate_for(endpoint))
        try:
            transport.open()
        except GatewayError:
            transport.close()
            raise
        return PTSProtocolClient(transport)

    @contextmanager
    def session(self, endpoint: ControllerEndpoint) -> Iterator[PTSProtocolClient]:
        client = self.client_factory(endpoint)
        try:
            yield client
        finally:
            client.transport.close()

    def load_record(self, station_id: str) -> StationRecord:
        record = self.repository.load_station_record(station_id)
        if record is None:
            raise StationNotFound(f"Station {station_id} not found")
        return record

    # ────────── status ──────────
    @classmethod
    def derive_status(
        cls,
        record: StationRecord,
        config: Optional[StationConfig],
        deliveries: List[DeliverySnapshot],
        alarms: List[AlarmSnapshot],
    ) -> StationStatus:
        """Operator state > ALARM > DISPENSING > IDLE"""
        if config is not None and config.maintenance_mode:
            return StationStatus.MAINTENANCE
        if record.status in cls.OPERATOR_STATES:
            return record.status
        if any(a.active and not a.acknowledged for a in alarms):
            return StationStatus.ALARM
        if any(d.volume_litres > 0 for d in deliveries):
            return StationStatus.DISPENSING
        return StationStatus.IDLE

    def resolve(self, station_id: str) -> ResolvedStatus:
        record = self.load_record(station_id)
        endpoint = self.repository.load_endpoint(station_id)
        if endpoint is None:
            self.logger.debug(f"Station {station_id} has no controller configured")
            return self._persisted_status(record)

        try:
            with self.session(endpoint) as client:
                return self._live_status(record, client)
        except GatewayError as e:
            self.logger.warning(f"Station {station_id}: controller unavailable, using persisted status ({e})")
            return self._persisted_status(record)

    def _live_status(self, record: StationRecord, client: PTSProtocolClient) -> ResolvedStatus:
        station_id = record.station_id
        deliveries = client.get_deliveries()
        alarms = client.get_alarms()

        config = self.repository.load_station_config(station_id)
        status = self.derive_status(record, config, deliveries, alarms)
        heartbeat = datetime.now()
        # The maintenance flag is never written into the record
        self.repository.save_station_status(
            station_id, self.derive_status(record, None, deliveries, alarms), heartbeat
        )

        self.logger.info(
            f"Station {station_id} status: {status.value} "
            f"({len(deliveries)} deliveries, {len(alarms)} alarms)"
        )
        return ResolvedStatus(
            station_id=station_id,
            status=status,
            controller_reachable=True,
            last_heartbeat=heartbeat,
            current_transaction=self.repository.load_active_transaction_id(station_id),
            alarms=[a for a in alarms if a.active],
            deliveries=deliveries,
        )

    def _persisted_status(self, record: StationRecord) -> ResolvedStatus:
        config = self.repository.load_station_config(record.station_id)
        status = StationStatus.MAINTENANCE if config is not None and config.maintenance_mode else record.status
        return ResolvedStatus(
            station_id=record.station_id,
            status=status,
            controller_reachable=False,
            last_heartbeat=record.last_heartbeat,
            current_transaction=self.repository.load_active_transaction_id(record.station_id),
        )

    # ────────── tanks ──────────
    def to_tank_status(self, station_id: str, tank: TankSnapshot, timestamp: datetime) -> TankStatus:
        return TankStatus(
            tank_id=f"{station_id}-tank-{tank.tank_index}",
            station_id=station_id,
            product=PTSProtocol.product_name(tank.product_code),
            level_litres=tank.volume_litres,
            capacity_litres=tank.volume_litres + tank.ullage_litres,
            temperature_c=tank.temperature_c,
            low_level_alarm=tank.volume_litres < self.settings.tank_low_level_litres,
            high_level_alarm=tank.ullage_litres < self.settings.tank_high_level_ullage_litres,
            timestamp=timestamp,
        )

    def get_tank_snapshot(self, station_id: str) -> TankReport:
        self.load_record(station_id)
        endpoint = self.repository.load_endpoint(station_id)
        if endpoint is None:
            return self._persisted_tanks(station_id)

        try:
            with self.session(endpoint) as client:
                return self._live_tanks(station_id, client)
        except GatewayError as e:
            self.logger.warning(f"Station {station_id}: using persisted tank rows ({e})")
            return self._persisted_tanks(station_id)

    def _live_tanks(self, station_id: str, client: PTSProtocolClient) -> TankReport:
        tanks = client.get_tanks()
        if not tanks:
            raise ProtocolError("Controller returned no tanks")
        now = datetime.now()
        return TankReport(
            station_id=station_id,
            controller_reachable=True,
            source=SOURCE_CONTROLLER,
            tanks=[self.to_tank_status(station_id, t, now) for t in tanks],
        )

    def _persisted_tanks(self, station_id: str) -> TankReport:
        return TankReport(
            station_id=station_id,
            controller_reachable=False,
            source=SOURCE_PERSISTED,
            tanks=self.repository.load_tank_rows(station_id),
        )

    # ────────── detail ──────────
    def get_station_detail(self, station_id: str) -> StationDetail:
        """Status and tanks share one session but fall back independently"""
        record = self.load_record(station_id)
        endpoint = self.repository.load_endpoint(station_id)
        status: Optional[ResolvedStatus] = None
        tanks: Optional[TankReport] = None

        if endpoint is not None:
            try:
                with self.session(endpoint) as client:
                    try:
                        status = self._live_status(record, client)
                    except GatewayError as e:
                        self.logger.warning(f"Station {station_id}: live status failed ({e})")
                    try:
                        tanks = self._live_tanks(station_id, client)
                    except GatewayError as e:
                        self.logger.warning(f"Station {station_id}: live tanks failed ({e})")
            except GatewayError as e:
                self.logger.warning(f"Station {station_id}: controller unavailable ({e})")

        if status is None:
            status = self._persisted_status(record)
        if tanks is None:
            tanks = self._persisted_tanks(station_id)

        pricing = self.repository.load_active_pricing(station_id)
        return StationDetail(
            station=self.repository.load_station_record(station_id) or record,
            status=status,
            tanks=tanks,
            pricing=pricing,
            config=self.repository.load_station_config(station_id),
            available_products=sorted({p.product for p in pricing}),
        )


class StationGateway:
    """Entry point used by the API: status reads, refill quotes and control commands"""

    def __init__(
        self,
        repository: StationRepository,
        settings: Optional[Settings] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.settings = settings or Settings()
        self.repository = repository
        self.gates = ControllerGateRegistry(self.settings.controller_busy_wait)
        self.resolver = StationStatusResolver(repository, self.settings, self.gates, client_factory)
        self.calculator = RefillCalculator(
            buffer_fraction=self.settings.hold_buffer_fraction,
            low_tank_threshold_percent=self.settings.low_tank_threshold_percent,
        )
        self.logger = logging.getLogger("StationGateway")

    def resolve(self, station_id: str) -> ResolvedStatus:
        return self.resolver.resolve(station_id)

    def get_tank_snapshot(self, station_id: str) -> TankReport:
        return self.resolver.get_tank_snapshot(station_id)

    def get_station_detail(self, station_id: str) -> StationDetail:
        return self.resolver.get_station_detail(station_id)

    @contextmanager
    def open_client(self, station_id: str) -> Iterator[PTSProtocolClient]:
        """Opened client for control commands; failures propagate"""
        self.resolver.load_record(station_id)
        endpoint = self.repository.load_endpoint(station_id)
        if endpoint is None:
            raise ControllerNotConfigured(f"Station {station_id} has no controller configured")
        with self.resolver.session(endpoint) as client:
            yield client

    # ────────── refill ──────────
    def refill_limits(self, station_id: str, product: str) -> RefillLimits:
        config = self.repository.load_station_config(station_id)
        limits = RefillLimits(
            min_volume_litres=self.settings.min_dispense_volume,
            min_amount=self.settings.min_dispense_amount,
            max_volume_litres=config.max_dispense_volume if config else self.settings.default_max_dispense_volume,
            max_amount=config.max_dispense_amount if config else self.settings.default_max_dispense_amount,
        )

        report = self.resolver.get_tank_snapshot(station_id)
        product_tanks = [t for t in report.tanks if t.product == product]
        if not product_tanks:
            self.logger.warning(f"Station {station_id}: no tank data for {product}, skipping tank check")
            return limits

        tank = max(product_tanks, key=lambda t: t.level_litres)
        return limits.model_copy(update={
            "tank_available_litres": tank.level_litres,
            "tank_capacity_litres": tank.capacity_litres,
        })

    def quote_refill(self, station_id: str, preset: RefillPreset) -> RefillQuote:
        record = self.resolver.load_record(station_id)
        config = self.repository.load_station_config(station_id)
        if record.status == StationStatus.MAINTENANCE or (
            config is not None and (config.maintenance_mode or not config.enabled)
        ):
            raise RefillRejected("station unavailable")

        prices = [p for p in self.repository.load_active_pricing(station_id) if p.product == preset.product]
        if not prices:
            raise RefillRejected("product not available")

        limits = self.refill_limits(station_id, preset.product)
        return self.calculator.quote(preset, prices[0].unit_price, limits)

    # ────────── control ──────────
    def authorize_refill(self, station_id: str, hose: int, quote: RefillQuote) -> None:
        """
        Authorize a hose for a quote the client holds.

        The quote is recomputed from current pricing, limits and tank levels;
        a quote that fails those checks, or whose figures differ from the
        recomputed ones, is rejected before the controller is contacted.
        """
        if quote.preset_kind == PresetKind.VOLUME:
            value = quote.target_volume_litres
        else:
            value = quote.target_amount
        preset = RefillPreset(product=quote.product, preset_kind=quote.preset_kind, preset_value=value)
        current = self.quote_refill(station_id, preset)

        fields = ("target_volume_litres", "target_amount", "unit_price", "hold_amount")
        changed = [f for f in fields if getattr(current, f) != getattr(quote, f)]
        if changed:
            self.logger.warning(f"Station {station_id}: stale or altered quote for hose {hose} ({', '.join(changed)})")
            raise RefillRejected(REASON_QUOTE_MISMATCH)

        self.authorize_hose(station_id, hose, current.preset_kind, value)

    def authorize_hose(self, station_id: str, hose: int, kind: PresetKind, value: float) -> None:
        self.logger.info(f"Station {station_id}: authorizing hose {hose} for {kind.value} {value}")
        with self.open_client(station_id) as client:
            client.authorize_hose(hose, kind, value)

    def stop_delivery(self, station_id: str, hose: int) -> None:
        self.logger.info(f"Station {station_id}: stopping hose {hose}")
        with self.open_client(station_id) as client:
            client.stop_delivery(hose)

    def emergency_stop(self, station_id: str) -> None:
        self.logger.warning(f"Station {station_id}: EMERGENCY STOP")
        with self.open_client(station_id) as client:
            client.emergency_stop()

    def clear_delivery(self, station_id: str, hose: int) -> None:
        self.logger.info(f"Station {station_id}: clearing hose {hose}")
        with self.open_client(station_id) as client:
            client.clear_delivery(hose)
