"""Domain exceptions raised by the alert core and mapped to HTTP statuses at the edge."""


class StationWatchError(Exception):
    status_code = 500


class IngestRejected(StationWatchError):
    """A reading was refused before any state was touched."""

    def __init__(self, reason: str, status_code: int = 400):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class DeviceNotFound(StationWatchError):
    status_code = 404

    def __init__(self, device_id: str):
        super().__init__(f"Device {device_id} not found")
        self.device_id = device_id


class AlertNotFound(StationWatchError):
    status_code = 404

    def __init__(self, alert_id: str):
        super().__init__(f"Alert {alert_id} not found")
        self.alert_id = alert_id


class InvalidRequest(StationWatchError):
    """A request body that cannot be acted on."""

    status_code = 400


class InvalidCommand(InvalidRequest):
    pass


class InvalidConfiguration(InvalidRequest):
    pass


class SweepIncomplete(StationWatchError):
    """Some devices failed during a periodic sweep; the rest were processed."""

    def __init__(self, sweep: str, failed: list[str]):
        super().__init__(f"{sweep} failed for {len(failed)} device(s): {', '.join(failed)}")
        self.sweep = sweep
        self.failed = list(failed)
