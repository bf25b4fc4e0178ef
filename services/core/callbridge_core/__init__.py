"""CallBridge Core - voice/SMS feed synchronization and identity resolution."""

__version__ = "0.1.0"
