"""Network-access orchestration relay for hotspot routers."""

__version__ = "0.4.0"
