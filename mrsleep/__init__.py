"""
Mr Sleep - sleep-cycle alarm service package

This is the root package for Mr Sleep, containing shared utilities and the
alarm core that sits between the app's UI and an external alarm authority.

Core modules:
- alarms: Alarm/timer scheduling, reconciliation with the authority, persistence
- datetime_utils: Timezone helpers and time-of-day parsing
- utils: Environment parsing and async helpers
"""

__version__ = "0.4.2"
