"""flowbroker: local session broker between app clients and a coding agent."""

__version__ = "0.1.0"
