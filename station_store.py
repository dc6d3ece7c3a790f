"""
Storage contracts used by the gateway.

The relational store lives outside this project; StationRepository is the
narrow read/write surface the gateway needs. InMemoryStationRepository backs
the API when no real store is wired in, and can be seeded from JSON.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from models import (
    ControllerEndpoint,
    Pricing,
    StationConfig,
    StationRecord,
    StationStatus,
    TankStatus,
)


class StationRepository(ABC):

    @abstractmethod
    def load_endpoint(self, station_id: str) -> Optional[ControllerEndpoint]:
        """Controller endpoint of the station, None when not configured"""

    @abstractmethod
    def load_station_record(self, station_id: str) -> Optional[StationRecord]:
        ...

    @abstractmethod
    def load_tank_rows(self, station_id: str) -> List[TankStatus]:
        ...

    @abstractmethod
    def load_active_pricing(self, station_id: str) -> List[Pricing]:
        ...

    @abstractmethod
    def load_station_config(self, station_id: str) -> Optional[StationConfig]:
        ...

    def load_active_transaction_id(self, station_id: str) -> Optional[str]:
        return None

    @abstractmethod
    def save_station_status(self, station_id: str, status: StationStatus, heartbeat: datetime) -> None:
        """Persist the last known status and heartbeat"""


class InMemoryStationRepository(StationRepository):
    """Thread-safe dict-backed repository"""

    def __init__(self):
        self._lock = threading.Lock()
        self.endpoints: Dict[str, ControllerEndpoint] = {}
        self.stations: Dict[str, StationRecord] = {}
        self.tanks: Dict[str, List[TankStatus]] = {}
        self.pricing: Dict[str, List[Pricing]] = {}
        self.configs: Dict[str, StationConfig] = {}
        self.active_transactions: Dict[str, str] = {}
        self.logger = logging.getLogger("StationRepository")

    @classmethod
    def from_json(cls, path: str) -> "InMemoryStationRepository":
        """
        Load stations from a JSON file shaped like:

        {"stations": [{"station": {...}, "endpoint": {...}, "config": {...},
                       "tanks": [...], "pricing": [...]}]}
        """
        repo = cls()
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        for entry in raw.get("stations", []):
            repo.add_station(
                StationRecord.model_validate(entry["station"]),
                endpoint=ControllerEndpoint.model_validate(entry["endpoint"]) if entry.get("endpoint") else None,
                config=StationConfig.model_validate(entry["config"]) if entry.get("config") else None,
                tanks=[TankStatus.model_validate(t) for t in entry.get("tanks", [])],
                pricing=[Pricing.model_validate(p) for p in entry.get("pricing", [])],
            )
        repo.logger.info(f"Loaded {len(repo.stations)} stations from {path}")
        return repo

    def add_station(
        self,
        record: StationRecord,
        endpoint: Optional[ControllerEndpoint] = None,
        config: Optional[StationConfig] = None,
        tanks: Optional[List[TankStatus]] = None,
        pricing: Optional[List[Pricing]] = None,
    ):
        with self._lock:
            station_id = record.station_id
            self.stations[station_id] = record
            if endpoint is not None:
                self.endpoints[station_id] = endpoint
            if config is not None:
                self.configs[station_id] = config
            self.tanks[station_id] = list(tanks or [])
            self.pricing[station_id] = list(pricing or [])

    def load_endpoint(self, station_id: str) -> Optional[ControllerEndpoint]:
        with self._lock:
            return self.endpoints.get(station_id)

    def load_station_record(self, station_id: str) -> Optional[StationRecord]:
        with self._lock:
            record = self.stations.get(station_id)
            return record.model_copy() if record else None

    def load_tank_rows(self, station_id: str) -> List[TankStatus]:
        with self._lock:
            return sorted(self.tanks.get(station_id, []), key=lambda t: t.product)

    def load_active_pricing(self, station_id: str) -> List[Pricing]:
        now = datetime.now()
        with self._lock:
            rows = self.pricing.get(station_id, [])
            active = [
                p for p in rows
                if (p.effective_to is None or _naive(p.effective_to) > now)
                and (p.effective_from is None or _naive(p.effective_from) <= now)
            ]
        return sorted(active, key=lambda p: p.product)

    def load_station_config(self, station_id: str) -> Optional[StationConfig]:
        with self._lock:
            return self.configs.get(station_id)

    def load_active_transaction_id(self, station_id: str) -> Optional[str]:
        with self._lock:
            return self.active_transactions.get(station_id)

    def save_station_status(self, station_id: str, status: StationStatus, heartbeat: datetime) -> None:
        with self._lock:
            record = self.stations.get(station_id)
            if record is None:
                return
            self.stations[station_id] = record.model_copy(update={"status": status, "last_heartbeat": heartbeat})
        self.logger.debug(f"Station {station_id} status saved: {status.value}")


def _naive(value: datetime) -> datetime:
    return value.astimezone().replace(tzinfo=None) if value.tzinfo else value
