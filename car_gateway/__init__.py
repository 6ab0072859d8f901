"""
Car Gateway - WebSocket to TCP relay for a single remote-controlled car.

This package runs next to the control UI and:
- Accepts WebSocket connections from browser clients
- Owns the one TCP connection to the car and keeps it alive
- Broadcasts car connection status to every open client
"""

__version__ = "1.0.0"
