"""HTTP transport for the relay."""
