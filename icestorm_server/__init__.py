"""IceStorm synthesis server: runs the toolchain on HDL sent over a WebSocket."""

__version__ = "1.0.0"
