from .main import BridgeService, service_loop

__all__ = ["BridgeService", "service_loop"]
