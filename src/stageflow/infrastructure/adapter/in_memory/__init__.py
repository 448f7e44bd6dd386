"""Thread-safe, process-local backend."""
