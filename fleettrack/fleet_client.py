"""
fleet_client.py

HTTP clients for the services the tracking core consumes: the drone
registry CRUD service and the per-drone connectivity probe.

Run a quick probe with: fleettrack probe <hostname>
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from fleettrack.errors import FleetTrackError, UnknownDroneError

logger = logging.getLogger(__name__)

DEFAULT_PROBE_PORT = 5000
DEFAULT_TIMEOUT = 5.0

# ============================================================================
# MODELS
# ============================================================================

class DroneRecord(BaseModel):
    """Persisted drone as returned by the registry service"""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str
    hostname: str = ""
    status: str = "offline"
    type: str = Field(default="quadcopter", validation_alias=AliasChoices("type", "drone_type"))
    model: str = ""
    serial: str = Field(default="", validation_alias=AliasChoices("serial", "serial_number"))
    notes: str = ""
    last_ping: Optional[str] = None


@dataclass
class ConnectionProbeResult:
    """Outcome of a connectivity probe"""
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    body: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'status_code': self.status_code,
            'error': self.error,
            'body': self.body
        }

# ============================================================================
# REGISTRY CLIENT
# ============================================================================

class RegistryServiceError(FleetTrackError):
    """Registry service returned an error or could not be reached"""


class DroneRegistryClient:
    """CRUD client for the drone registry service"""

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, drone_id: Optional[int] = None, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error(f"Registry request failed: {method} {url}: {e}")
            raise RegistryServiceError(f"Registry service unreachable: {e}") from e

        if response.status_code == 404 and drone_id is not None:
            raise UnknownDroneError(str(drone_id))
        if response.status_code >= 400:
            raise RegistryServiceError(f"{method} {url} -> HTTP {response.status_code}")

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def list_drones(self) -> List[DroneRecord]:
        data = self._request('GET', '/drones')
        return [DroneRecord.model_validate(item) for item in data or []]

    def get_drone(self, drone_id: int) -> DroneRecord:
        return DroneRecord.model_validate(self._request('GET', f'/drones/{drone_id}', drone_id))

    def create_drone(self, fields: Dict[str, Any]) -> DroneRecord:
        record = DroneRecord.model_validate(self._request('POST', '/drones', json=fields))
        logger.info(f"Drone registered: {record.id} ({record.name})")
        return record

    def update_drone(self, drone_id: int, fields: Dict[str, Any]) -> DroneRecord:
        data = self._request('PUT', f'/drones/{drone_id}', drone_id, json=fields)
        return DroneRecord.model_validate(data)

    def delete_drone(self, drone_id: int) -> bool:
        self._request('DELETE', f'/drones/{drone_id}', drone_id)
        logger.info(f"Drone deleted: {drone_id}")
        return True

    def ping_drone(self, drone_id: int) -> DroneRecord:
        """Stamp last_ping on the record"""
        data = self._request('POST', f'/drones/{drone_id}/ping', drone_id)
        return DroneRecord.model_validate(data)

# ============================================================================
# CONNECTIVITY PROBE
# ============================================================================

def check_connection(hostname: str, port: int = DEFAULT_PROBE_PORT,
                     timeout: float = DEFAULT_TIMEOUT,
                     session: Optional[requests.Session] = None) -> ConnectionProbeResult:
    """
    Probe the drone's telemetry service before trusting a live hostname.

    Args:
        hostname: Drone host name or address
        port: Telemetry service port
        timeout: Request timeout in seconds

    Returns:
        ConnectionProbeResult; never raises for network failures
    """
    url = f"http://{hostname}:{port}/status"
    http = session or requests

    try:
        response = http.get(url, timeout=timeout)
    except requests.RequestException as e:
        logger.warning(f"Connection test failed for {hostname}: {e}")
        return ConnectionProbeResult(success=False, error=str(e))

    try:
        body = response.json()
    except ValueError:
        body = response.text

    success = response.status_code == 200
    if success:
        logger.info(f"Connection test OK for {hostname}:{port}")
    else:
        logger.warning(f"Connection test for {hostname}:{port} returned HTTP {response.status_code}")
    return ConnectionProbeResult(success=success, status_code=response.status_code, body=body)

