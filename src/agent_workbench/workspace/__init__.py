"""Workspace lifecycle: status table, setup and version-control operations."""
