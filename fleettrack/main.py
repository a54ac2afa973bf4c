# Command-line interface for the tracking core
# File: fleettrack/main.py

import asyncio
import logging
import sys
from typing import Dict, List, Optional

from fleettrack.config import TrackingConfig
from fleettrack.errors import FleetTrackError
from fleettrack.fleet_client import DroneRegistryClient, check_connection
from fleettrack.models import DroneMode, DroneSpec, FlightRecord
from fleettrack.session import TrackingSession
from fleettrack.transport import TelemetryTransport
from fleettrack.waypoints import DEFAULT_DEMO_WAYPOINTS, load_mission_file

logger = logging.getLogger(__name__)


def _read_file(path: str) -> str:
    with open(path, encoding='utf-8') as f:
        return f.read()


def _print_report(record: FlightRecord):
    print(f"\n{'='*60}")
    print(f"FLIGHT RECORD - {record.drone_name} ({record.drone_identifier})")
    print(f"{'='*60}")
    print(f"Status:     {record.mission_status}")
    print(f"Duration:   {record.duration_str}")
    print(f"Distance:   {record.distance_str}")
    print(f"Waypoints:  {record.waypoints_visited}/{record.total_waypoints}")
    print(f"Battery:    {record.battery_start_pct:.0f}% -> {record.battery_end_pct:.0f}%")
    print(f"Max Alt:    {record.max_altitude_m:.0f} m")
    print(f"Speed:      avg {record.avg_speed_kmh:.1f} km/h, peak {record.max_speed_kmh:.1f} km/h")
    print(f"\nFlight log:")
    for event in record.flight_log:
        print(f"  {event.time.strftime('%H:%M:%S')}  {event.kind.value:<9} {event.detail}")
    print(f"{'='*60}\n")


class CLI:
    """Command Line Interface"""

    def __init__(self, config: Optional[TrackingConfig] = None,
                 transport: Optional[TelemetryTransport] = None):
        self.config = config or TrackingConfig.from_env()
        self.transport = transport
        self.commands = {
            'demo': self._demo_cmd,
            'parse': self._parse_cmd,
            'probe': self._probe_cmd,
            'fleet': self._fleet_cmd,
            'track': self._track_cmd,
            'help': self._help_cmd
        }

    def run(self, args: List[str]) -> int:
        """Run CLI command"""
        if not args:
            self._help_cmd([])
            return 0

        command = args[0]
        if command not in self.commands:
            print(f"Unknown command: {command}")
            self._help_cmd([])
            return 2

        try:
            return self.commands[command](args[1:]) or 0
        except (FleetTrackError, OSError) as e:
            print(f"Error: {e}")
            return 1

    def _demo_cmd(self, args: List[str]) -> int:
        """Fly a simulated mission to completion and print its record"""
        points = DEFAULT_DEMO_WAYPOINTS
        if args:
            points = [wp.to_dict() for wp in load_mission_file(_read_file(args[0]))]

        self.config.simulation.autotick = False
        session = TrackingSession(self.config)
        entry_id = session.attach(DroneSpec.demo(waypoints=points))

        ticks = session.engine.run_to_completion(entry_id)
        logger.info(f"Demo mission finished after {ticks} ticks")

        _print_report(session.get_report(entry_id) or session.build_report(entry_id))
        session.shutdown()
        return 0

    def _parse_cmd(self, args: List[str]) -> int:
        """Parse and normalize a QGC WPL mission file"""
        if not args:
            print("Usage: parse <mission-file>")
            return 2

        mission = load_mission_file(_read_file(args[0]))
        print(f"\n{'='*78}")
        print(f"{'#':<4} {'Role':<18} {'Label':<24} {'Lat':>10} {'Lng':>11} {'Alt':>6}")
        print(f"{'='*78}")
        for i, wp in enumerate(mission):
            print(f"{i:<4} {wp.role.value:<18} {wp.label[:24]:<24} "
                  f"{wp.lat:>10.5f} {wp.lng:>11.5f} {wp.altitude_m:>5.0f}m")
        print(f"{'='*78}\n")
        return 0

    def _probe_cmd(self, args: List[str]) -> int:
        """Test a drone's telemetry service before tracking it live"""
        if not args:
            print("Usage: probe <hostname> [port]")
            return 2

        port = int(args[1]) if len(args) > 1 else self.config.live.port
        result = check_connection(args[0], port=port)
        if result.success:
            print(f"Connected to {args[0]}:{port}")
            if isinstance(result.body, dict):
                for key, value in result.body.items():
                    print(f"  {key}: {value}")
            return 0

        print(f"Connection test failed: {result.error or f'HTTP {result.status_code}'}")
        return 1

    def _fleet_cmd(self, args: List[str]) -> int:
        """List drones persisted in the registry service"""
        client = DroneRegistryClient(self.config.registry_url)
        drones = client.list_drones()
        print(f"\n{'='*80}")
        print(f"{'ID':<6} {'Name':<20} {'Hostname':<24} {'Status':<10} {'Last Ping'}")
        print(f"{'='*80}")
        for d in drones:
            print(f"{d.id:<6} {d.name[:20]:<20} {d.hostname[:24]:<24} {d.status:<10} {d.last_ping or 'Never'}")
        print(f"{'='*80}\n")
        return 0

    def _track_cmd(self, args: List[str]) -> int:
        """Track a live drone until interrupted, then print its record"""
        if not args:
            print("Usage: track <hostname> [mission-file] [seconds]")
            return 2

        hostname = args[0]
        points = None
        if len(args) > 1:
            points = [wp.to_dict() for wp in load_mission_file(_read_file(args[1]))]
        duration = float(args[2]) if len(args) > 2 else None

        spec = DroneSpec(source_key=f"host:{hostname}", name=hostname, mode=DroneMode.LIVE,
                         hostname=hostname, waypoints=points)

        # Filled by _track on the way out, whether it timed out or was interrupted
        captured: Dict[str, FlightRecord] = {}

        async def _track():
            session = TrackingSession(self.config, transport=self.transport)
            entry_id = session.attach(spec)
            try:
                if duration is None:
                    await asyncio.Event().wait()
                else:
                    await asyncio.sleep(duration)
            except asyncio.CancelledError:
                logger.info(f"Tracking of {hostname} interrupted")
            finally:
                captured['record'] = session.build_report(entry_id)
                session.shutdown()

        try:
            asyncio.run(_track())
        except KeyboardInterrupt:
            print("\nTracking stopped")

        record = captured.get('record')
        if record is not None:
            _print_report(record)
        return 0

    def _help_cmd(self, args: List[str]) -> int:
        """Show help"""
        print("\n" + "="*70)
        print("Drone Fleet Tracking - CLI")
        print("="*70)
        print("\nCommands:")
        print("  demo [file]                 - Fly a simulated mission, print its record")
        print("  parse <file>                - Parse a QGC WPL mission file")
        print("  probe <hostname> [port]     - Test a drone telemetry service")
        print("  fleet                       - List drones in the registry service")
        print("  track <host> [file] [secs]  - Track a live drone")
        print("  help                        - Show this help")
        print("="*70 + "\n")
        return 0


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    return CLI().run(sys.argv[1:] if argv is None else argv)


if __name__ == "__main__":
    sys.exit(main())
