"""Device registry and peer bindings."""

from .bindings import PeerBindingStore
from .devices import DeviceRegistry

__all__ = ["DeviceRegistry", "PeerBindingStore"]
