from ..config import AppConfig
from .base import NodeRegistry, NodeSpec
from .builtin import register_builtin_nodes


def default_registry(app_settings: AppConfig | None = None) -> NodeRegistry:
    registry = NodeRegistry()
    register_builtin_nodes(registry, app_settings)
    return registry


__all__ = ["NodeRegistry", "NodeSpec", "default_registry", "register_builtin_nodes"]
