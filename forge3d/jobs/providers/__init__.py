"""
Provider transports

Concrete ProviderGateway implementations for the external generation API.
"""

from .http_gateway import HttpProviderGateway

__all__ = ["HttpProviderGateway"]
