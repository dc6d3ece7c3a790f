from fastapi import FastAPI, HTTPException, Path
from fastapi.responses import RedirectResponse
from fastapi.middleware.cors import CORSMiddleware
import logging
import uvicorn
from typing import Optional
from contextlib import asynccontextmanager
from datetime import datetime

from config import settings
from errors import (
    ControllerBusy, ControllerNotConfigured, GatewayError,
    RefillRejected, StationNotFound, TransportTimeout
)
from models import (
    CommandResponse, DispenseProgress, ProgressRequest, RefillOutcome,
    RefillPreset, RefillQuote, ResolvedStatus, SettleRequest, StationDetail, TankReport
)
from station_manager import StationGateway
from station_store import InMemoryStationRepository


# Configure logging
_handlers = [logging.StreamHandler()]
if settings.log_file:
    _handlers.append(logging.FileHandler(settings.log_file, mode='a'))

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=_handlers
)

# Set logger levels for different components
logging.getLogger("GatewayAPI").setLevel(logging.INFO)
logging.getLogger("GatewayStartup").setLevel(logging.INFO)
logging.getLogger("StationGateway").setLevel(logging.INFO)
logging.getLogger("StationStatusResolver").setLevel(logging.INFO)
logging.getLogger("DigestSession").setLevel(logging.INFO)
logging.getLogger("uvicorn").setLevel(logging.INFO)

logger = logging.getLogger("GatewayAPI")
startup_logger = logging.getLogger("GatewayStartup")

# Global gateway instance
gateway: Optional[StationGateway] = None


def create_gateway() -> StationGateway:
    if settings.station_seed_file:
        startup_logger.info(f"Seeding stations from {settings.station_seed_file}")
        repository = InMemoryStationRepository.from_json(settings.station_seed_file)
    else:
        startup_logger.warning("No station seed file configured, starting with an empty store")
        repository = InMemoryStationRepository()
    return StationGateway(repository, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    global gateway

    startup_logger.info("=== Starting PTS Station Gateway ===")
    startup_logger.info(f"Startup time: {datetime.now()}")
    startup_logger.info(f"Configuration: {settings.model_dump(exclude={'station_seed_file'})}")

    gateway = create_gateway()
    startup_logger.info("System startup complete - API ready to serve requests")

    yield

    startup_logger.info("=== Shutting down PTS Station Gateway ===")
    gateway = None


app = FastAPI(
    title="PTS Station Gateway API",
    description="Station status, tank levels, refill quotes and hose control for PTS-2 forecourt controllers",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_gateway() -> StationGateway:
    if not gateway:
        raise HTTPException(status_code=500, detail="Gateway not initialized")
    return gateway


def to_http_error(e: Exception) -> HTTPException:
    """Map gateway and refill failures onto HTTP status codes"""
    if isinstance(e, StationNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, RefillRejected):
        return HTTPException(status_code=422, detail=e.reason)
    if isinstance(e, ControllerNotConfigured):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ControllerBusy):
        return HTTPException(status_code=429, detail=str(e))
    if isinstance(e, TransportTimeout):
        return HTTPException(status_code=504, detail=str(e))
    return HTTPException(status_code=502, detail=str(e))


@app.get("/", include_in_schema=False)
async def root():
    """Redirect to API documentation"""
    return RedirectResponse(url="/docs")


@app.get("/api/health",
         summary="Health Check",
         description="Check if the API is running and healthy")
async def health_check():
    return {
        "status": "healthy",
        "service": "PTS Station Gateway API",
        "version": "1.0.0",
        "gateway_ready": gateway is not None
    }


# ────────── station reads ──────────
# Controller failures fall back to persisted data, so only StationNotFound reaches the client

@app.get("/api/stations/{station_id}",
         response_model=StationDetail,
         summary="Get Station Detail",
         description="Station record, resolved status, tank levels, active pricing and configuration")
def get_station_detail(station_id: str = Path(..., description="Station ID")):
    try:
        return get_gateway().get_station_detail(station_id)
    except StationNotFound as e:
        raise to_http_error(e)


@app.get("/api/stations/{station_id}/status",
         response_model=ResolvedStatus,
         summary="Get Station Status",
         description="Live status from the controller, or the persisted status when it cannot be reached")
def get_station_status(station_id: str = Path(..., description="Station ID")):
    """
    Status precedence:
    - MAINTENANCE / OFFLINE set by an operator
    - ALARM when an alarm is active and not acknowledged
    - DISPENSING when a hose reports volume
    - IDLE otherwise
    """
    try:
        return get_gateway().resolve(station_id)
    except StationNotFound as e:
        raise to_http_error(e)


@app.get("/api/stations/{station_id}/tank",
         response_model=TankReport,
         summary="Get Tank Levels",
         description="Live tank levels from the controller, or the persisted rows when it cannot be reached")
def get_tank_levels(station_id: str = Path(..., description="Station ID")):
    try:
        return get_gateway().get_tank_snapshot(station_id)
    except StationNotFound as e:
        raise to_http_error(e)


# ────────── refill ──────────

@app.post("/api/stations/{station_id}/refill/quote",
          response_model=RefillQuote,
          summary="Quote Refill",
          description="Validate a volume or amount preset and compute the wallet hold")
def quote_refill(
    preset: RefillPreset,
    station_id: str = Path(..., description="Station ID")
):
    try:
        return get_gateway().quote_refill(station_id, preset)
    except (StationNotFound, RefillRejected) as e:
        raise to_http_error(e)


@app.post("/api/refill/settle",
          response_model=RefillOutcome,
          summary="Settle Refill",
          description="Final charge and refund for the dispensed volume")
def settle_refill(request: SettleRequest):
    return get_gateway().calculator.settle(request.quote, request.actual_volume_litres, request.stop_reason)


@app.post("/api/refill/progress",
          response_model=DispenseProgress,
          summary="Refill Progress",
          description="Dispensing progress against the quoted target")
def refill_progress(request: ProgressRequest):
    return get_gateway().calculator.progress(request.quote, request.dispensed_volume_litres)


# ────────── control ──────────
# Control failures are never retried or masked

def _run_command(station_id: str, message: str, command, *args) -> CommandResponse:
    try:
        command(station_id, *args)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (GatewayError, RefillRejected) as e:
        logger.error(f"Station {station_id}: {message} failed: {e}")
        raise to_http_error(e)
    return CommandResponse(success=True, message=message, timestamp=datetime.now())


@app.post("/api/stations/{station_id}/hoses/{hose}/authorize",
          response_model=CommandResponse,
          summary="Authorize Hose",
          description="Authorize a hose for the quoted volume or amount")
def authorize_hose(
    quote: RefillQuote,
    station_id: str = Path(..., description="Station ID"),
    hose: int = Path(..., description="Hose number", ge=1)
):
    return _run_command(station_id, f"Hose {hose} authorized", get_gateway().authorize_refill, hose, quote)


@app.post("/api/stations/{station_id}/hoses/{hose}/stop",
          response_model=CommandResponse,
          summary="Stop Delivery")
def stop_delivery(
    station_id: str = Path(..., description="Station ID"),
    hose: int = Path(..., description="Hose number", ge=1)
):
    return _run_command(station_id, f"Hose {hose} stopped", get_gateway().stop_delivery, hose)


@app.post("/api/stations/{station_id}/hoses/{hose}/clear",
          response_model=CommandResponse,
          summary="Clear Delivery")
def clear_delivery(
    station_id: str = Path(..., description="Station ID"),
    hose: int = Path(..., description="Hose number", ge=1)
):
    return _run_command(station_id, f"Hose {hose} cleared", get_gateway().clear_delivery, hose)


@app.post("/api/stations/{station_id}/emergency-stop",
          response_model=CommandResponse,
          summary="Emergency Stop",
          description="Stop every hose on the station's controller")
def emergency_stop(station_id: str = Path(..., description="Station ID")):
    return _run_command(station_id, "Emergency stop sent", get_gateway().emergency_stop)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
