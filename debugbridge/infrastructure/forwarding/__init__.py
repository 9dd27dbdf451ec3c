"""
Port Forwarding Infrastructure.

Maps the debug port on every non-loopback interface to the local endpoint.
"""

from .rule_manager import ForwardRuleManager, PortProxyTool

__all__ = [
    "ForwardRuleManager",
    "PortProxyTool",
]
