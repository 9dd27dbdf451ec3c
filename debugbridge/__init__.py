"""debugbridge - browser remote-debugging supervisor with per-interface port forwarding."""

__version__ = "0.3.0"
