from .coordinator import GatewayPlan, RegistryIdentifyGate, ShardCoordinator

__all__ = ["GatewayPlan", "RegistryIdentifyGate", "ShardCoordinator"]
