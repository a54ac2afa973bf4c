"""Registry CRUD client, connectivity probe and fleet-record attach"""

from unittest.mock import Mock

import pytest
import requests

from fleettrack import fleet_client
from fleettrack.fleet_client import DroneRecord, DroneRegistryClient, RegistryServiceError
from fleettrack.errors import UnknownDroneError
from fleettrack.models import DroneMode, DroneSpec

RECORD = {
    "id": 7,
    "name": "Scout",
    "hostname": "scout.local",
    "status": "online",
    "drone_type": "quadcopter",
    "model": "Quad X",
    "serial_number": "SN-001",
    "notes": "",
    "last_ping": None,
}


def _response(status_code=200, payload=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.content = b"" if payload is None and not text else b"x"
    response.text = text
    if payload is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    return response


@pytest.fixture
def http():
    return Mock()


@pytest.fixture
def client(http):
    return DroneRegistryClient("http://registry/api/", session=http)


def test_list_drones_parses_records(client, http):
    http.request.return_value = _response(payload=[RECORD])

    drones = client.list_drones()

    http.request.assert_called_once_with('GET', 'http://registry/api/drones', timeout=client.timeout)
    assert drones[0].id == 7
    assert drones[0].type == "quadcopter"
    assert drones[0].serial == "SN-001"


def test_get_missing_drone_raises_unknown(client, http):
    http.request.return_value = _response(status_code=404, payload={"detail": "not found"})
    with pytest.raises(UnknownDroneError):
        client.get_drone(99)


def test_server_error_raises(client, http):
    http.request.return_value = _response(status_code=500, payload={"detail": "boom"})
    with pytest.raises(RegistryServiceError):
        client.list_drones()


def test_unreachable_registry_raises(client, http):
    http.request.side_effect = requests.ConnectionError("refused")
    with pytest.raises(RegistryServiceError):
        client.list_drones()


def test_create_update_delete_and_ping(client, http):
    http.request.return_value = _response(payload=RECORD)
    assert client.create_drone({"name": "Scout", "hostname": "scout.local"}).name == "Scout"
    http.request.assert_called_with('POST', 'http://registry/api/drones', timeout=client.timeout,
                                    json={"name": "Scout", "hostname": "scout.local"})

    assert client.update_drone(7, {"notes": "spare"}).id == 7
    assert client.ping_drone(7).hostname == "scout.local"

    http.request.return_value = _response(status_code=204)
    assert client.delete_drone(7) is True


def test_check_connection_success(http):
    http.get.return_value = _response(payload={"connected": True, "ws_rate_hz": 10})

    result = fleet_client.check_connection("scout.local", session=http)

    http.get.assert_called_once_with("http://scout.local:5000/status", timeout=fleet_client.DEFAULT_TIMEOUT)
    assert result.success is True
    assert result.status_code == 200
    assert result.body["ws_rate_hz"] == 10


def test_check_connection_http_error(http):
    http.get.return_value = _response(status_code=503, text="unavailable")
    result = fleet_client.check_connection("scout.local", port=5001, session=http)
    assert result.success is False
    assert result.status_code == 503
    assert result.body == "unavailable"


def test_check_connection_network_failure(http):
    http.get.side_effect = requests.Timeout("timed out")
    result = fleet_client.check_connection("scout.local", session=http)
    assert result.success is False
    assert "timed out" in result.error
    assert result.to_dict()["status_code"] is None


def test_spec_from_record():
    record = DroneRecord.model_validate(RECORD)
    spec = DroneSpec.from_record(record, waypoints=[{'lat': 1, 'lng': 1}, {'lat': 2, 'lng': 2}])

    assert spec.mode == DroneMode.LIVE
    assert spec.source_key == "fleet:7"
    assert spec.hostname == "scout.local"
    assert spec.serial == "ID-7"
    assert spec.display_name == "Scout — Quad X"


def test_spec_from_record_requires_hostname():
    record = DroneRecord.model_validate({**RECORD, "hostname": ""})
    with pytest.raises(ValueError):
        DroneSpec.from_record(record)
