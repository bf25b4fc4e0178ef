"""Domain layer for CallBridge."""
