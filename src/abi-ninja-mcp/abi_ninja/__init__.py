"""Proxy-aware ABI resolution over a runtime-extensible chain registry."""

from .chains import ChainRegistry, NativeCurrency, NetworkDefinition, NetworkOrigin
from .config import Config, load_config
from .exceptions import (
    AbiNinjaError,
    AllSourcesExhausted,
    Conflict,
    InvalidAbiFormat,
    NetworkError,
    NotVerified,
    UnknownChain,
)
from .proxy import DetectionMethod, ProxyDetector, ProxyRecord
from .resolver import AbiResolver, RequestGate, Resolution
from .service import AbiNinjaService

__all__ = [
    "AbiNinjaError",
    "AbiNinjaService",
    "AbiResolver",
    "AllSourcesExhausted",
    "ChainRegistry",
    "Config",
    "Conflict",
    "DetectionMethod",
    "InvalidAbiFormat",
    "NativeCurrency",
    "NetworkDefinition",
    "NetworkError",
    "NetworkOrigin",
    "NotVerified",
    "ProxyDetector",
    "ProxyRecord",
    "RequestGate",
    "Resolution",
    "UnknownChain",
    "load_config",
]
