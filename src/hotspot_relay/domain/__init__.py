"""Domain records and router configuration."""
