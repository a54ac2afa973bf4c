# Error taxonomy for the tracking core


class FleetTrackError(Exception):
    """Base class for tracking-core errors"""


class DroneModeError(FleetTrackError):
    """Operation does not match the entry's driver mode (programming defect)"""


class DuplicateDroneError(FleetTrackError):
    """The physical or demo drone is already attached"""


class UnknownDroneError(FleetTrackError, KeyError):
    """No entry is registered under the given id"""

    def __str__(self):
        return f"Unknown drone entry: {self.args[0]}" if self.args else "Unknown drone entry"


class MissionFileError(FleetTrackError):
    """Mission file is malformed or yields no valid points"""


class TransportError(FleetTrackError):
    """Live telemetry transport could not be opened"""
