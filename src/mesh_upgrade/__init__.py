"""
Mesh Upgrade - self-upgrade orchestrator for the mesh network monitoring dashboard.

This package moves the running dashboard service from one version to another,
surviving the process restart in the middle of the procedure through durable
state in SQLite and an out-of-band watchdog status file.
"""

__version__ = "2.14.4"
