"""Daily habit checklist, screen-time log and read-only bank viewer."""

__version__ = "0.3.0"
