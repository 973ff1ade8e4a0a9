"""Router and overlay drivers."""
