"""
Unit tests for status resolution, tank fallback and the station gateway
"""

import unittest
from datetime import datetime
from unittest.mock import MagicMock

from config import Settings
from errors import (
    ConnectError, ControllerNotConfigured, ProtocolError, RefillRejected,
    StationNotFound, TransportTimeout
)
from models import (
    AlarmSnapshot, ControllerEndpoint, DeliverySnapshot, PresetKind, Pricing,
    RefillPreset, StationConfig, StationRecord, StationStatus, TankSnapshot, TankStatus
)
from station_manager import StationGateway, StationStatusResolver
from station_store import InMemoryStationRepository

HEARTBEAT = datetime(2025, 7, 1, 8, 0, 0)


def _alarm(active=True, acknowledged=False):
    return AlarmSnapshot(alarm_id=1, priority=1, active=active, acknowledged=acknowledged, text="Leak sensor")


def _delivery(volume):
    return DeliverySnapshot(hose_index=1, product_code=1, volume_litres=volume)


def _tank(index=1, product=1, volume=5000.0, ullage=15000.0):
    return TankSnapshot(tank_index=index, product_code=product, volume_litres=volume, ullage_litres=ullage, temperature_c=28.0)


def _repository(endpoint=True, status=StationStatus.IDLE, config=None, tank_level=5000.0):
    repo = InMemoryStationRepository()
    repo.add_station(
        StationRecord(station_id="ST-001", name="Jalan Ampang", status=status, last_heartbeat=HEARTBEAT),
        endpoint=ControllerEndpoint(host="10.0.0.5", port=80, login="admin", password="secret") if endpoint else None,
        config=config,
        tanks=[TankStatus(tank_id="T1", station_id="ST-001", product="RON95",
                          level_litres=tank_level, capacity_litres=20000.0)],
        pricing=[Pricing(pricing_id="P1", station_id="ST-001", product="RON95", unit_price=2.05)],
    )
    return repo


class _FakeControllers:
    """client_factory that hands out one mocked client"""

    def __init__(self, deliveries=None, alarms=None, tanks=None):
        self.client = MagicMock()
        self.client.get_deliveries.return_value = deliveries or []
        self.client.get_alarms.return_value = alarms or []
        self.client.get_tanks.return_value = tanks if tanks is not None else [_tank()]
        self.opened = []
        self.open_error = None

    def __call__(self, endpoint):
        self.opened.append(endpoint)
        if self.open_error is not None:
            raise self.open_error
        return self.client


class TestDeriveStatus(unittest.TestCase):

    def setUp(self):
        self.record = StationRecord(station_id="ST-001")

    def test_precedence(self):
        derive = StationStatusResolver.derive_status
        self.assertEqual(derive(self.record, None, [_delivery(3.2)], [_alarm()]), StationStatus.ALARM)
        self.assertEqual(derive(self.record, None, [_delivery(3.2)], []), StationStatus.DISPENSING)
        self.assertEqual(derive(self.record, None, [_delivery(0)], []), StationStatus.IDLE)
        self.assertEqual(derive(self.record, None, [], []), StationStatus.IDLE)

    def test_acknowledged_or_inactive_alarm_ignored(self):
        derive = StationStatusResolver.derive_status
        self.assertEqual(derive(self.record, None, [], [_alarm(acknowledged=True)]), StationStatus.IDLE)
        self.assertEqual(derive(self.record, None, [], [_alarm(active=False)]), StationStatus.IDLE)

    def test_maintenance_flag_beats_telemetry(self):
        config = StationConfig(station_id="ST-001", max_dispense_volume=100, max_dispense_amount=500,
                               maintenance_mode=True)
        status = StationStatusResolver.derive_status(self.record, config, [_delivery(3.2)], [_alarm()])
        self.assertEqual(status, StationStatus.MAINTENANCE)

    def test_persisted_operator_state_kept(self):
        record = StationRecord(station_id="ST-001", status=StationStatus.OFFLINE)
        status = StationStatusResolver.derive_status(record, None, [_delivery(3.2)], [])
        self.assertEqual(status, StationStatus.OFFLINE)


class TestStationStatusResolver(unittest.TestCase):
    """Test cases for live resolution and persisted fallback"""

    def setUp(self):
        self.settings = Settings()

    def test_resolve_live(self):
        repo = _repository()
        controllers = _FakeControllers(deliveries=[_delivery(3.2)])
        resolver = StationStatusResolver(repo, self.settings, client_factory=controllers)

        status = resolver.resolve("ST-001")

        self.assertTrue(status.controller_reachable)
        self.assertEqual(status.status, StationStatus.DISPENSING)
        self.assertEqual(len(status.deliveries), 1)
        self.assertGreater(status.last_heartbeat, HEARTBEAT)
        controllers.client.transport.close.assert_called_once()

        saved = repo.load_station_record("ST-001")
        self.assertEqual(saved.status, StationStatus.DISPENSING)
        self.assertEqual(saved.last_heartbeat, status.last_heartbeat)

    def test_maintenance_flag_not_persisted(self):
        config = StationConfig(station_id="ST-001", max_dispense_volume=100, max_dispense_amount=500,
                               maintenance_mode=True)
        repo = _repository(config=config)
        gateway = StationGateway(repo, self.settings, client_factory=_FakeControllers())

        self.assertEqual(gateway.resolve("ST-001").status, StationStatus.MAINTENANCE)
        self.assertEqual(repo.load_station_record("ST-001").status, StationStatus.IDLE)

        repo.configs["ST-001"] = config.model_copy(update={"maintenance_mode": False})

        self.assertEqual(gateway.resolve("ST-001").status, StationStatus.IDLE)
        quote = gateway.quote_refill("ST-001", RefillPreset(product="RON95", preset_kind=PresetKind.VOLUME,
                                                            preset_value=10))
        self.assertEqual(quote.target_volume_litres, 10.0)

    def test_persisted_operator_state_survives_live_read(self):
        repo = _repository(status=StationStatus.OFFLINE)
        resolver = StationStatusResolver(repo, self.settings,
                                         client_factory=_FakeControllers(deliveries=[_delivery(3.2)]))

        self.assertEqual(resolver.resolve("ST-001").status, StationStatus.OFFLINE)
        self.assertEqual(repo.load_station_record("ST-001").status, StationStatus.OFFLINE)

    def test_resolve_falls_back_when_controller_unreachable(self):
        repo = _repository(status=StationStatus.DISPENSING)
        controllers = _FakeControllers()
        controllers.open_error = ConnectError("refused")
        resolver = StationStatusResolver(repo, self.settings, client_factory=controllers)

        status = resolver.resolve("ST-001")

        self.assertFalse(status.controller_reachable)
        self.assertEqual(status.status, StationStatus.DISPENSING)
        self.assertEqual(status.last_heartbeat, HEARTBEAT)
        self.assertEqual(repo.load_station_record("ST-001").last_heartbeat, HEARTBEAT)

    def test_resolve_falls_back_on_protocol_error(self):
        repo = _repository()
        controllers = _FakeControllers()
        controllers.client.get_alarms.side_effect = ProtocolError("Alarm table busy", 2)
        resolver = StationStatusResolver(repo, self.settings, client_factory=controllers)

        status = resolver.resolve("ST-001")

        self.assertFalse(status.controller_reachable)
        self.assertEqual(status.status, StationStatus.IDLE)
        controllers.client.transport.close.assert_called_once()

    def test_resolve_without_endpoint(self):
        controllers = _FakeControllers()
        resolver = StationStatusResolver(_repository(endpoint=False), self.settings, client_factory=controllers)

        status = resolver.resolve("ST-001")

        self.assertFalse(status.controller_reachable)
        self.assertEqual(controllers.opened, [])

    def test_resolve_maintenance_without_controller(self):
        config = StationConfig(station_id="ST-001", max_dispense_volume=100, max_dispense_amount=500,
                               maintenance_mode=True)
        resolver = StationStatusResolver(_repository(endpoint=False, config=config), self.settings,
                                         client_factory=_FakeControllers())

        self.assertEqual(resolver.resolve("ST-001").status, StationStatus.MAINTENANCE)

    def test_unknown_station(self):
        resolver = StationStatusResolver(_repository(), self.settings, client_factory=_FakeControllers())

        with self.assertRaises(StationNotFound):
            resolver.resolve("ST-404")
        with self.assertRaises(StationNotFound):
            resolver.get_tank_snapshot("ST-404")

    def test_tank_snapshot_live(self):
        controllers = _FakeControllers(tanks=[_tank(), _tank(index=2, product=3, volume=800.0, ullage=300.0)])
        resolver = StationStatusResolver(_repository(), self.settings, client_factory=controllers)

        report = resolver.get_tank_snapshot("ST-001")

        self.assertTrue(report.controller_reachable)
        self.assertEqual(report.source, "controller")
        ron95, diesel = report.tanks
        self.assertEqual(ron95.product, "RON95")
        self.assertEqual(ron95.capacity_litres, 20000.0)
        self.assertFalse(ron95.low_level_alarm)
        self.assertFalse(ron95.high_level_alarm)
        self.assertEqual(diesel.product, "DIESEL")
        self.assertTrue(diesel.low_level_alarm)
        self.assertTrue(diesel.high_level_alarm)

    def test_tank_snapshot_unknown_product(self):
        controllers = _FakeControllers(tanks=[_tank(product=42)])
        resolver = StationStatusResolver(_repository(), self.settings, client_factory=controllers)

        self.assertEqual(resolver.get_tank_snapshot("ST-001").tanks[0].product, "UNKNOWN")

    def test_tank_snapshot_falls_back(self):
        controllers = _FakeControllers()
        controllers.client.get_tanks.side_effect = TransportTimeout("slow")
        resolver = StationStatusResolver(_repository(), self.settings, client_factory=controllers)

        report = resolver.get_tank_snapshot("ST-001")

        self.assertFalse(report.controller_reachable)
        self.assertEqual(report.source, "persisted")
        self.assertEqual(report.tanks[0].tank_id, "T1")

    def test_empty_tank_list_falls_back(self):
        controllers = _FakeControllers(tanks=[])
        resolver = StationStatusResolver(_repository(), self.settings, client_factory=controllers)

        report = resolver.get_tank_snapshot("ST-001")

        self.assertEqual(report.source, "persisted")

    def test_detail_falls_back_per_subsystem(self):
        controllers = _FakeControllers(alarms=[_alarm()])
        controllers.client.get_tanks.side_effect = ProtocolError("Probe offline", 3)
        resolver = StationStatusResolver(_repository(), self.settings, client_factory=controllers)

        detail = resolver.get_station_detail("ST-001")

        self.assertTrue(detail.status.controller_reachable)
        self.assertEqual(detail.status.status, StationStatus.ALARM)
        self.assertFalse(detail.tanks.controller_reachable)
        self.assertEqual(detail.tanks.source, "persisted")
        self.assertEqual(detail.available_products, ["RON95"])
        self.assertEqual(len(controllers.opened), 1)

    def test_detail_controller_unreachable(self):
        controllers = _FakeControllers()
        controllers.open_error = ConnectError("refused")
        resolver = StationStatusResolver(_repository(), self.settings, client_factory=controllers)

        detail = resolver.get_station_detail("ST-001")

        self.assertFalse(detail.status.controller_reachable)
        self.assertFalse(detail.tanks.controller_reachable)
        self.assertEqual(detail.station.name, "Jalan Ampang")


class TestStationGateway(unittest.TestCase):
    """Test cases for refill quotes and control commands"""

    def setUp(self):
        self.settings = Settings()

    def _gateway(self, repo=None, controllers=None):
        return StationGateway(repo or _repository(endpoint=False), self.settings,
                              client_factory=controllers or _FakeControllers())

    def test_quote_refill(self):
        quote = self._gateway().quote_refill("ST-001", RefillPreset(product="RON95", preset_kind=PresetKind.VOLUME,
                                                                     preset_value=10))

        self.assertEqual(quote.target_volume_litres, 10.0)
        self.assertEqual(quote.target_amount, 20.5)
        self.assertEqual(quote.hold_amount, 22.55)
        self.assertEqual(quote.advisories, [])

    def test_quote_uses_live_tank(self):
        controllers = _FakeControllers(tanks=[_tank(volume=50.0, ullage=19950.0)])
        gateway = self._gateway(_repository(), controllers)

        with self.assertRaises(RefillRejected) as ctx:
            gateway.quote_refill("ST-001", RefillPreset(product="RON95", preset_kind=PresetKind.VOLUME,
                                                        preset_value=60))
        self.assertEqual(ctx.exception.reason, "insufficient tank volume")

    def test_quote_unknown_product(self):
        with self.assertRaises(RefillRejected) as ctx:
            self._gateway().quote_refill("ST-001", RefillPreset(product="DIESEL", preset_kind=PresetKind.VOLUME,
                                                                 preset_value=10))
        self.assertEqual(ctx.exception.reason, "product not available")

    def test_quote_station_config_limits(self):
        config = StationConfig(station_id="ST-001", max_dispense_volume=50, max_dispense_amount=80)
        gateway = self._gateway(_repository(endpoint=False, config=config))

        with self.assertRaises(RefillRejected) as ctx:
            gateway.quote_refill("ST-001", RefillPreset(product="RON95", preset_kind=PresetKind.VOLUME,
                                                        preset_value=60))
        self.assertEqual(ctx.exception.reason, "above maximum volume")

        with self.assertRaises(RefillRejected) as ctx:
            gateway.quote_refill("ST-001", RefillPreset(product="RON95", preset_kind=PresetKind.AMOUNT,
                                                        preset_value=90))
        self.assertEqual(ctx.exception.reason, "above maximum amount")

    def test_quote_station_in_maintenance(self):
        config = StationConfig(station_id="ST-001", max_dispense_volume=100, max_dispense_amount=500,
                               maintenance_mode=True)
        gateway = self._gateway(_repository(endpoint=False, config=config))

        with self.assertRaises(RefillRejected) as ctx:
            gateway.quote_refill("ST-001", RefillPreset(product="RON95", preset_kind=PresetKind.VOLUME,
                                                        preset_value=10))
        self.assertEqual(ctx.exception.reason, "station unavailable")

    def test_quote_low_tank_advisory(self):
        gateway = self._gateway(_repository(endpoint=False, tank_level=3000.0))

        quote = gateway.quote_refill("ST-001", RefillPreset(product="RON95", preset_kind=PresetKind.VOLUME,
                                                            preset_value=10))

        self.assertEqual(quote.advisories, ["low tank level after refill"])

    def test_authorize_refill(self):
        controllers = _FakeControllers()
        gateway = self._gateway(_repository(), controllers)
        quote = gateway.quote_refill("ST-001", RefillPreset(product="RON95", preset_kind=PresetKind.AMOUNT,
                                                            preset_value=50))

        gateway.authorize_refill("ST-001", 2, quote)

        controllers.client.authorize_hose.assert_called_once_with(2, PresetKind.AMOUNT, 50.0)

    def test_authorize_refill_rechecks_limits(self):
        controllers = _FakeControllers()
        gateway = self._gateway(_repository(), controllers)
        quote = gateway.quote_refill("ST-001", RefillPreset(product="RON95", preset_kind=PresetKind.VOLUME,
                                                            preset_value=10))
        altered = quote.model_copy(update={"target_volume_litres": 9999.0})

        with self.assertRaises(RefillRejected) as ctx:
            gateway.authorize_refill("ST-001", 2, altered)
        self.assertEqual(ctx.exception.reason, "above maximum volume")
        controllers.client.authorize_hose.assert_not_called()

    def test_authorize_refill_rejects_altered_figures(self):
        controllers = _FakeControllers()
        gateway = self._gateway(_repository(), controllers)
        quote = gateway.quote_refill("ST-001", RefillPreset(product="RON95", preset_kind=PresetKind.VOLUME,
                                                            preset_value=10))
        cases = [
            {"hold_amount": 1.0},
            {"unit_price": 0.5},
            {"target_amount": 2.0},
        ]
        for update in cases:
            with self.subTest(update=update):
                with self.assertRaises(RefillRejected) as ctx:
                    gateway.authorize_refill("ST-001", 2, quote.model_copy(update=update))
                self.assertEqual(ctx.exception.reason, "quote does not match current pricing")
        controllers.client.authorize_hose.assert_not_called()

    def test_authorize_refill_after_price_change(self):
        repo = _repository()
        controllers = _FakeControllers()
        gateway = self._gateway(repo, controllers)
        quote = gateway.quote_refill("ST-001", RefillPreset(product="RON95", preset_kind=PresetKind.VOLUME,
                                                            preset_value=10))
        repo.pricing["ST-001"] = [Pricing(pricing_id="P2", station_id="ST-001", product="RON95", unit_price=2.60)]

        with self.assertRaises(RefillRejected):
            gateway.authorize_refill("ST-001", 2, quote)
        controllers.client.authorize_hose.assert_not_called()

    def test_control_without_endpoint(self):
        with self.assertRaises(ControllerNotConfigured):
            self._gateway().stop_delivery("ST-001", 1)

    def test_control_errors_propagate(self):
        controllers = _FakeControllers()
        controllers.client.emergency_stop.side_effect = TransportTimeout("slow")
        gateway = self._gateway(_repository(), controllers)

        with self.assertRaises(TransportTimeout):
            gateway.emergency_stop("ST-001")
        controllers.client.transport.close.assert_called_once()

    def test_control_open_failure_propagates(self):
        controllers = _FakeControllers()
        controllers.open_error = ConnectError("refused")
        gateway = self._gateway(_repository(), controllers)

        with self.assertRaises(ConnectError):
            gateway.clear_delivery("ST-001", 1)

    def test_control_unknown_station(self):
        with self.assertRaises(StationNotFound):
            self._gateway().stop_delivery("ST-404", 1)


if __name__ == "__main__":
    unittest.main()
