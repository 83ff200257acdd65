"""Local flat-file time tracking: subject timers, focus sessions, todos and reminders."""

__version__ = "0.1.0"
