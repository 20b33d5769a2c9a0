"""HTTP clients for the session engine and the Studio bridge."""
from .bridge_probe import BridgeHealth, probe_bridge_health
from .engine_client import EngineClient

__all__ = ["BridgeHealth", "EngineClient", "probe_bridge_health"]
