"""Remote datastore access for Tourplan clients."""

from .gateway import RemoteGateway

__all__ = ["RemoteGateway"]
