"""Live telemetry ingestion: message handling, proximity and connection lifecycle"""

import asyncio
import json

import pytest

from conftest import CITY_MISSION, FakeTransport
from fleettrack.errors import DroneModeError
from fleettrack.events import TELEMETRY_ERROR
from fleettrack.models import DroneMode, DroneSpec, EventKind, LinkState
from fleettrack.monitoring import FIX_SPEED, MESSAGES_DROPPED, SPEED_OUTLIERS
from fleettrack.session import TrackingSession
from fleettrack.telemetry import TelemetryMessage, normalize_battery


def _live_spec(hostname="drone1", points=CITY_MISSION):
    return DroneSpec(source_key=f"host:{hostname}", name="Scout", mode=DroneMode.LIVE,
                     hostname=hostname, model="Quad", waypoints=points)


def _position(lat, lng, alt=None):
    position = {'latitude_deg': lat, 'longitude_deg': lng}
    if alt is not None:
        position['relative_altitude_m'] = alt
    return json.dumps({'position': position})


async def settle(rounds: int = 10):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def live_id(session):
    return session.attach(_live_spec(), auto_start=False)


# ============================================================================
# MESSAGES
# ============================================================================

def test_position_within_radius_marks_waypoint_once(session, live_id):
    tower = CITY_MISSION[1]
    for _ in range(3):
        assert session.ingestor.handle_message(live_id, _position(tower['lat'] + 0.0001, tower['lng']))

    entry = session.get_entry(live_id)
    assert entry.live_progress().visited_waypoints == {1}
    reached = [e for e in entry.event_log if e.detail == "Tower reached (live)"]
    assert len(reached) == 1
    assert reached[0].kind == EventKind.WAYPOINT


def test_position_outside_all_radii_visits_nothing(session, live_id):
    session.ingestor.handle_message(live_id, _position(37.7600, -122.4500))
    entry = session.get_entry(live_id)
    assert entry.live_progress().visited_waypoints == set()
    assert entry.event_log == []


def test_return_to_launch_is_logged_as_land(session, live_id):
    home = CITY_MISSION[2]
    session.ingestor.handle_message(live_id, _position(home['lat'], home['lng']))
    entry = session.get_entry(live_id)
    assert entry.live_progress().visited_waypoints == {2}
    assert entry.event_log[-1].kind == EventKind.LAND


def test_position_updates_telemetry(session, live_id):
    session.ingestor.handle_message(live_id, _position(37.77, -122.42, alt=42.6))
    telemetry = session.get_entry(live_id).telemetry
    assert (telemetry.lat, telemetry.lng) == (37.77, -122.42)
    assert telemetry.altitude_m == 43
    assert telemetry.speed_kmh == 0


def test_speed_is_derived_from_consecutive_fixes(session, live_id, fake_clock):
    session.ingestor.handle_message(live_id, _position(0.0, 0.0))
    fake_clock.advance(10)
    # ~100 m east in 10 s
    session.ingestor.handle_message(live_id, _position(0.0, 0.0008993))
    assert session.get_entry(live_id).telemetry.speed_kmh == pytest.approx(36, rel=0.01)

    stats = session.metrics.get_histogram_stats(FIX_SPEED, {'entry': live_id})
    assert stats['count'] == 1
    assert stats['max'] == pytest.approx(36, rel=0.01)


def test_speed_outlier_keeps_previous_speed(session, live_id, fake_clock):
    session.ingestor.handle_message(live_id, _position(0.0, 0.0))
    fake_clock.advance(1)
    # ~1 km in one second
    session.ingestor.handle_message(live_id, _position(0.0, 0.009))

    assert session.get_entry(live_id).telemetry.speed_kmh == 0
    assert session.metrics.get_counter(SPEED_OUTLIERS) == 1
    assert session.metrics.get_histogram_stats(FIX_SPEED, {'entry': live_id}) == {'count': 0}


def test_outlier_after_valid_speed_keeps_that_speed(session, live_id, fake_clock):
    session.ingestor.handle_message(live_id, _position(0.0, 0.0))
    fake_clock.advance(10)
    session.ingestor.handle_message(live_id, _position(0.0, 0.0008993))
    fake_clock.advance(1)
    session.ingestor.handle_message(live_id, _position(0.0, 0.02))
    assert session.get_entry(live_id).telemetry.speed_kmh == pytest.approx(36, rel=0.01)


def test_zero_elapsed_time_keeps_previous_speed(session, live_id, fake_clock):
    session.ingestor.handle_message(live_id, _position(0.0, 0.0))
    fake_clock.advance(10)
    session.ingestor.handle_message(live_id, _position(0.0, 0.0008993))
    session.ingestor.handle_message(live_id, _position(0.0, 0.0009))
    assert session.get_entry(live_id).telemetry.speed_kmh == pytest.approx(36, rel=0.01)


@pytest.mark.parametrize("raw,expected", [
    (0.76, 76),
    (1, 100),
    (0, 0),
    (76, 76),
    (64.4, 64),
    (150, 100),
])
def test_battery_normalization(raw, expected):
    assert normalize_battery(raw) == expected


def test_battery_and_attitude_messages(session, live_id):
    entry = session.get_entry(live_id)
    before = (entry.telemetry.lat, entry.telemetry.lng)

    session.ingestor.handle_message(live_id, json.dumps({
        'attitude': {'yaw_deg': -90},
        'battery': {'remaining_percent': 0.5}
    }))
    assert entry.telemetry.heading_deg == 270
    assert entry.telemetry.battery_pct == 50
    assert (entry.telemetry.lat, entry.telemetry.lng) == before


def test_yaw_wraps_into_range(session, live_id):
    session.ingestor.handle_message(live_id, json.dumps({'attitude': {'yaw_deg': 725}}))
    assert session.get_entry(live_id).telemetry.heading_deg == 5


@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2, 3]",
    '{"position": {"latitude_deg": "north", "longitude_deg": 1}}',
    '{"position": {"latitude_deg": 95, "longitude_deg": 1}}',
    '{"position": {"longitude_deg": 1}}',
    b'\xff\xfe',
])
def test_malformed_messages_are_dropped(session, live_id, raw):
    assert session.ingestor.handle_message(live_id, raw) is False
    entry = session.get_entry(live_id)
    assert entry.link.dropped == 1
    assert session.metrics.get_counter(MESSAGES_DROPPED) == 1
    assert entry.telemetry.speed_kmh == 0


def test_empty_object_is_a_valid_message(session, live_id):
    assert session.ingestor.handle_message(live_id, "{}") is True
    assert session.get_entry(live_id).link.messages == 1


def test_message_models_ignore_unknown_sections():
    message = TelemetryMessage.model_validate_json(
        '{"position": {"latitude_deg": 1, "longitude_deg": 2}, "gps": {"satellites": 12}}'
    )
    assert message.position.latitude_deg == 1
    assert message.attitude is None


def test_message_for_simulated_entry_is_a_mode_error(session):
    entry_id = session.attach(DroneSpec.demo(), auto_start=False)
    with pytest.raises(DroneModeError):
        session.ingestor.handle_message(entry_id, _position(0, 0))


def test_message_after_detach_is_ignored(session, live_id):
    session.detach(live_id)
    assert session.ingestor.handle_message(live_id, _position(0, 0)) is False
    assert len(session.registry) == 0


# ============================================================================
# CONNECTION LIFECYCLE
# ============================================================================

def test_connect_subscribes_and_logs_launch(session, transport, live_id):
    async def scenario():
        assert session.ingestor.connect(live_id) is True
        await settle()
        transport.last.push(_position(37.7750, -122.4195, alt=12))
        await settle()

    asyncio.run(scenario())
    entry = session.get_entry(live_id)

    assert transport.urls == ["ws://drone1:5000/ws/telemetry"]
    assert json.loads(transport.last.sent[0]) == {"subscribe": ["all"]}
    assert entry.link.state == LinkState.CONNECTED
    assert entry.event_log[0].kind == EventKind.LAUNCH
    assert entry.event_log[0].detail == "Live telemetry stream started"
    assert entry.mission_started_at is not None
    assert entry.telemetry.altitude_m == 12
    assert entry.live_progress().visited_waypoints == {0}


def test_connect_twice_is_noop(session, transport, live_id):
    async def scenario():
        first = session.ingestor.connect(live_id)
        second = session.ingestor.connect(live_id)
        await settle()
        return first, second

    assert asyncio.run(scenario()) == (True, False)
    assert len(transport.connections) == 1


def test_connect_requires_live_entry(session):
    entry_id = session.attach(DroneSpec.demo(), auto_start=False)

    async def scenario():
        session.ingestor.connect(entry_id)

    with pytest.raises(DroneModeError):
        asyncio.run(scenario())


def test_open_resets_visited_waypoints(session, transport, live_id):
    entry = session.get_entry(live_id)
    entry.live_progress().visited_waypoints.add(1)

    async def scenario():
        session.ingestor.connect(live_id)
        await settle()

    asyncio.run(scenario())
    assert entry.live_progress().visited_waypoints == set()
    assert entry.link.last_position is None


def test_unexpected_close_schedules_reconnect(session, transport, live_id):
    async def scenario():
        session.ingestor.connect(live_id)
        await settle()
        transport.last.end()
        await settle()
        link = session.get_entry(live_id).link
        pending = (link.state, link.reconnect_handle is not None, link.reconnect_attempts)
        session.ingestor.disconnect(live_id)
        return pending

    state, has_handle, attempts = asyncio.run(scenario())
    link = session.get_entry(live_id).link

    assert state == LinkState.RECONNECT_PENDING
    assert has_handle is True
    assert attempts == 1
    assert link.state == LinkState.DISCONNECTED
    assert link.reconnect_handle is None


def test_reconnect_opens_new_stream(session, transport, live_id):
    session.config.live.reconnect_delay_s = 0.01

    async def scenario():
        session.ingestor.connect(live_id)
        await settle()
        transport.last.end()
        await settle()
        await asyncio.sleep(0.05)
        await settle()

    asyncio.run(scenario())
    assert len(transport.connections) == 2
    assert session.get_entry(live_id).link.state == LinkState.CONNECTED
    assert session.get_entry(live_id).link.reconnect_attempts == 0


def test_explicit_disconnect_does_not_reconnect(session, transport, live_id):
    session.config.live.reconnect_delay_s = 0.01

    async def scenario():
        session.ingestor.connect(live_id)
        await settle()
        assert session.ingestor.disconnect(live_id) is True
        await asyncio.sleep(0.05)
        await settle()

    asyncio.run(scenario())
    link = session.get_entry(live_id).link
    assert len(transport.connections) == 1
    assert transport.last.closed is True
    assert link.state == LinkState.DISCONNECTED
    assert link.reconnect_handle is None
    assert session.ingestor.disconnect(live_id) is False


def test_no_reconnect_when_tracking_inactive(session, transport, live_id):
    async def scenario():
        session.ingestor.connect(live_id)
        await settle()
        session.set_tracking_active(False)
        transport.last.end()
        await settle()

    asyncio.run(scenario())
    link = session.get_entry(live_id).link
    assert link.state == LinkState.DISCONNECTED
    assert link.reconnect_handle is None


def test_connect_failure_raises_notice_and_retries(config, fake_clock):
    failing = FakeTransport(fail=True)
    session = TrackingSession(config, transport=failing, monotonic=fake_clock)

    async def scenario():
        entry_id = session.attach(_live_spec())
        await settle()
        link = session.get_entry(entry_id).link
        result = (link.state, link.reconnect_attempts)
        session.shutdown()
        return result

    state, attempts = asyncio.run(scenario())
    assert state == LinkState.RECONNECT_PENDING
    assert attempts == 1
    assert session.event_router.recent(event_type=TELEMETRY_ERROR)
    assert "drone1:5000" in session.get_notices()[0].message


def test_detach_while_streaming_stops_updates(session, transport, live_id):
    async def scenario():
        session.ingestor.connect(live_id)
        await settle()
        connection = transport.last
        session.detach(live_id)
        connection.push(_position(0, 0))
        await settle()
        return connection

    connection = asyncio.run(scenario())
    assert live_id not in session.registry
    assert connection.closed is True
