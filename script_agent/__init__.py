"""Script Agent Runtime.

A device-side agent that keeps an authenticated WebSocket connection to a
remote controller alive and runs controller-issued scripts in isolated,
independently cancellable execution units.
"""

__version__ = "0.1.0"
