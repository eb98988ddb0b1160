"""Reliable, flow-controlled message transport over UDP with sliding windows."""

__version__ = "0.1.0"