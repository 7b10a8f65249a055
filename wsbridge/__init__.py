"""JSON event and remote-call bridge over WebSocket, with a sans-IO framing engine."""

__version__ = "0.1.0"
__all__ = ["frames", "closing", "connection", "protocol", "client", "server", "extend"]