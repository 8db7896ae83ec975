"""Dispatch errors raised before any send-log row is written."""


class DispatchConfigurationError(RuntimeError):
    """The intent cannot be dispatched as configured; no user was touched."""


class UnknownNotificationError(DispatchConfigurationError):
    def __init__(self, notification_key: str) -> None:
        super().__init__(f"Unknown notification_key: {notification_key}")
        self.notification_key = notification_key


class ProviderNotConfiguredError(DispatchConfigurationError):
    def __init__(self) -> None:
        super().__init__("OneSignal app id / REST API key are not configured")
