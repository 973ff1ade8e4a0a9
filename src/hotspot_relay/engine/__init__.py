"""Event handling, background loops and overlay reconciliation."""
