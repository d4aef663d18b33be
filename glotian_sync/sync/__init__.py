"""Remote synchronization: validation, backend adapters, processor, triggers."""
