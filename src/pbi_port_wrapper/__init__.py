"""pbi_port_wrapper - a stable port in front of Power BI Desktop's engine."""

from .config import ConfigurationManager, ProxyConfiguration
from .controller import PortWrapper
from .discovery import PowerBIInstance, detect_instances
from .errors import (
    AcceptError,
    AlreadyRunningError,
    ProxyError,
    StartupError,
    StreamFault,
    TargetConnectError,
)
from .events import ProxyEvents
from .observability import configure as configure_observability
from .proxy import ProxySession, TcpProxy, XmlaProxy
from .rewrite import REWRITE_RULES, RewriteRule, rewrite_database_references

__all__ = [
    # Proxies
    "XmlaProxy",
    "TcpProxy",
    "ProxySession",
    "ProxyEvents",
    # Errors
    "ProxyError",
    "AlreadyRunningError",
    "AcceptError",
    "StartupError",
    "TargetConnectError",
    "StreamFault",
    # Rewriting
    "RewriteRule",
    "REWRITE_RULES",
    "rewrite_database_references",
    # Discovery and settings
    "PowerBIInstance",
    "detect_instances",
    "ProxyConfiguration",
    "ConfigurationManager",
    "PortWrapper",
    "configure_observability",
]
__version__ = "0.1.0"
