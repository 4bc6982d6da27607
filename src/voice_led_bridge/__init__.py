"""Discord voice presence to MQTT LED controller bridge."""

__all__ = ["config", "logging", "store", "commands", "gateway", "presence", "api"]
__version__ = "1.0.0"
