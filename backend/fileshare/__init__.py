"""Room-based file and text sharing service."""
