"""Error taxonomy surfaced by the alarm core to callers and the UI."""

from __future__ import annotations


class AlarmError(RuntimeError):
    """Base class for failures the UI may show to the user."""

    user_message = "An unknown error occurred."
    recovery_suggestion = "Please try again or restart the app."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.user_message)


class NotAuthorizedError(AlarmError):
    """Authorization gate failed or the authority is unavailable."""

    user_message = "Permission required to schedule alarms. Please enable in Settings."
    recovery_suggestion = "Go to Settings → Privacy & Security → Alarms and enable permission for this app."


class SchedulingFailedError(AlarmError):
    """The authority rejected or failed a schedule/cancel/transition request."""

    user_message = "Failed to schedule alarm."
    recovery_suggestion = "Try restarting the app or your device."

    def __init__(self, cause: BaseException | None = None, message: str | None = None) -> None:
        self.cause = cause
        if message is None:
            message = f"Failed to schedule alarm: {cause}" if cause is not None else self.user_message
        super().__init__(message)


class InvalidConfigurationError(AlarmError):
    """Caller supplied a malformed schedule or duration."""

    user_message = "Invalid alarm configuration. Please check your settings."
    recovery_suggestion = "Check the alarm time and duration and try again."


class ScheduleInPastError(InvalidConfigurationError):
    user_message = "Cannot schedule alarm in the past."
    recovery_suggestion = "Pick a time in the future."


class AuthorityUnavailableError(AlarmError):
    """No alarm authority exists on this host; mutations are disabled for the session."""

    user_message = "Alarm service is not available on this device."
    recovery_suggestion = "Alarms require a supported system alarm service. Please update your device."
