"""Channel-based message relay: auth providers, channels, connections, framing and merge rules."""

__version__ = "0.1.0"
__all__ = ["auth", "channel", "connection", "framing", "merge"]