class DispatchError(Exception):
    """Base class for errors raised by the dispatch engine."""


class DriverNotFoundError(DispatchError):
    def __init__(self, driver_id: str):
        super().__init__(f"driver {driver_id} not found")
        self.driver_id = driver_id


class RideNotFoundError(DispatchError):
    def __init__(self, ride_id: int):
        super().__init__(f"ride {ride_id} not found")
        self.ride_id = ride_id


class ConcurrentUpdateError(DispatchError):
    """Raised when a compare-and-swap update keeps losing to concurrent writers."""
