"""Durable storage helpers."""
