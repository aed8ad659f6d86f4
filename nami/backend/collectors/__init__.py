"""
collectors/__init__.py

Public API for the collectors sub-package.
"""

from .details import InterfaceDetailsCache, fetch_interface_details
from .processes import ProcessCorrelator
from .rates import RateSampler, categorize
from .sockets import SocketTable, parse_hex_ip, tcp_state

__all__ = [
    "RateSampler",
    "categorize",
    "InterfaceDetailsCache",
    "fetch_interface_details",
    "SocketTable",
    "parse_hex_ip",
    "tcp_state",
    "ProcessCorrelator",
]
