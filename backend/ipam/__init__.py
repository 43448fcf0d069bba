"""IP address management and liveness monitoring service."""
