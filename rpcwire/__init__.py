"""Asyncio JSON-RPC transports: HTTP, WebSocket, IPC, batching and a scripted test transport."""

__version__ = "0.1.0"

__all__ = ["base", "batch", "mock_transport", "http", "ipc", "ws"]