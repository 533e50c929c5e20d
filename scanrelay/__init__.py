"""scanrelay: run external security scanners and relay their reports."""

__version__ = "0.1.0"
