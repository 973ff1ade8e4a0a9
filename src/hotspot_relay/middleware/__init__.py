"""Starlette middleware for the operational HTTP API."""
