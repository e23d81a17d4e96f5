"""Coordinate AI coding-agent runs against shared git-backed workspaces."""

__version__ = "0.1.0"
