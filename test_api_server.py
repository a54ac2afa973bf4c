"""HTTP/websocket surface"""

import pytest
from fastapi.testclient import TestClient

from conftest import EQUATOR_MISSION, FakeTransport
from fleettrack.api_server import create_app

QGC_PLAN = "\n".join([
    "QGC WPL 110",
    "0\t1\t0\t16\t0\t0\t0\t0\t37.7749\t-122.4194\t0\t1",
    "1\t0\t3\t16\t0\t0\t0\t0\t37.7800\t-122.4100\t60\t1",
    "2\t0\t3\t20\t0\t0\t0\t0\t0\t0\t0\t1",
])


@pytest.fixture
def client(config):
    app = create_app(config, transport=FakeTransport())
    with TestClient(app) as client:
        yield client


def _attach_demo(client, slot="HLX-0042", waypoints=EQUATOR_MISSION):
    response = client.post("/api/drones", json={"slot": slot, "waypoints": waypoints})
    assert response.status_code == 200
    return response.json()["entry_id"]


def test_attach_and_list(client):
    entry_id = _attach_demo(client)

    data = client.get("/api/drones").json()
    assert data["count"] == 1
    assert data["active_id"] == entry_id
    assert data["drones"][0]["progress"]["state"] == "running"

    drone = client.get(f"/api/drones/{entry_id}").json()
    assert drone["mode"] == "simulated"
    assert len(drone["mission"]) == 3


def test_duplicate_attach_conflicts(client):
    _attach_demo(client)
    response = client.post("/api/drones", json={"slot": "HLX-0042"})
    assert response.status_code == 409


def test_live_attach_requires_hostname(client):
    response = client.post("/api/drones", json={"mode": "live", "name": "Scout"})
    assert response.status_code == 400


def test_live_attach(client):
    response = client.post("/api/drones", json={
        "mode": "live", "name": "Scout", "hostname": "drone1", "registry_id": 4, "auto_start": False
    })
    assert response.status_code == 200
    drone = client.get(f"/api/drones/{response.json()['entry_id']}").json()
    assert drone["source_key"] == "fleet:4"
    assert drone["link"]["hostname"] == "drone1"


def test_unknown_entry_is_404(client):
    assert client.get("/api/drones/D-MISSING").status_code == 404
    assert client.delete("/api/drones/D-MISSING").status_code == 404
    assert client.post("/api/drones/D-MISSING/activate").status_code == 404
    assert client.get("/api/drones/D-MISSING/report").status_code == 404
    assert client.get("/api/drones/active").status_code == 404


def test_activate_and_detach(client):
    a = _attach_demo(client, slot="A")
    b = _attach_demo(client, slot="B")

    assert client.post(f"/api/drones/{b}/activate").json() == {"active_id": b}
    assert client.get("/api/drones/active").json()["id"] == b

    assert client.delete(f"/api/drones/{b}").status_code == 200
    assert client.get("/api/drones/active").json()["id"] == a


def test_replace_mission(client):
    entry_id = _attach_demo(client)
    response = client.put(f"/api/drones/{entry_id}/mission",
                          json={"waypoints": [{"lat": 1, "lng": 1}, {"lat": 2, "lng": 2}]})
    assert response.status_code == 200
    assert [w["role"] for w in response.json()["waypoints"]] == ["takeoff", "return_to_launch"]

    bad = client.put(f"/api/drones/{entry_id}/mission", json={"waypoints": [{"lat": 1, "lng": 1}]})
    assert bad.status_code == 400


def test_mission_file_endpoints(client):
    parsed = client.post("/api/missions/parse", json={"content": QGC_PLAN}).json()
    assert parsed["count"] == 3

    assert client.post("/api/missions/parse", json={"content": "garbage"}).status_code == 400

    entry_id = _attach_demo(client)
    response = client.post(f"/api/drones/{entry_id}/mission-file", json={"content": QGC_PLAN})
    assert response.status_code == 200
    assert response.json()["waypoints"][1]["altitude_m"] == 60


def test_report_and_restart(client):
    entry_id = _attach_demo(client)
    report = client.get(f"/api/drones/{entry_id}/report").json()
    assert report["mission_status"] == "in-progress (0%)"
    assert report["total_waypoints"] == 3

    restarted = client.post(f"/api/drones/{entry_id}/restart").json()
    assert restarted == {"entry_id": entry_id, "restarted": True}


def test_tracking_state_and_notices(client):
    assert client.post("/api/tracking", json={"active": False}).json() == {"tracking_active": False}
    assert client.get("/api/notices").json() == {"notices": []}
    assert client.delete("/api/notices").status_code == 200


def test_events_health_and_metrics(client):
    _attach_demo(client)

    events = client.get("/api/events", params={"event_type": "entry.attached"}).json()
    assert events["count"] == 1

    health = client.get("/health").json()
    assert "overall_status" in health
    assert health["check_count"] == 3

    metrics = client.get("/metrics").json()
    assert metrics["gauges"]["registry.active_entries"] == 1

    root = client.get("/").json()
    assert root["session"]["entries"] == 1


def test_websocket_sends_snapshot(client):
    entry_id = _attach_demo(client)
    with client.websocket_connect("/ws") as websocket:
        message = websocket.receive_json()
    assert message["type"] == "snapshot"
    assert [e["id"] for e in message["entries"]] == [entry_id]


def test_websocket_reports_detached_entries(client):
    entry_id = _attach_demo(client)
    with client.websocket_connect("/ws") as websocket:
        websocket.receive_json()
        assert client.delete(f"/api/drones/{entry_id}").status_code == 200
        for _ in range(5):
            message = websocket.receive_json()
            if message["removed"]:
                break
    assert message["type"] == "entry.updated"
    assert message["removed"] == [entry_id]
    assert message["entries"] == []


def test_empty_waypoint_list_attaches_without_mission(client):
    response = client.post("/api/drones", json={"slot": "EMPTY", "waypoints": []})
    assert response.status_code == 200

    drone = client.get(f"/api/drones/{response.json()['entry_id']}").json()
    assert drone["mission"] == []
    assert drone["progress"]["state"] == "idle"


def test_metrics_expose_fix_speed_histogram(client):
    response = client.post("/api/drones", json={
        "mode": "live", "name": "Scout", "hostname": "drone1", "auto_start": False
    })
    entry_id = response.json()["entry_id"]
    session = client.app.state.session
    session.ingestor.handle_message(entry_id, '{"position": {"latitude_deg": 0, "longitude_deg": 0}}')
    session.ingestor.clock = lambda: 1e9
    session.ingestor.handle_message(entry_id, '{"position": {"latitude_deg": 0, "longitude_deg": 0.0001}}')

    histograms = client.get("/metrics").json()["histograms"]
    assert histograms[f"telemetry.fix_speed_kmh{{entry={entry_id}}}"]["count"] == 1
