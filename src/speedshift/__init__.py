"""Audio speed-change service: transform planning, jobs, events and client queue."""

__version__ = "0.1.0"
