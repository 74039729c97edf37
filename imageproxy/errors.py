from __future__ import annotations


class ImageProxyError(Exception):
    """Base class for failures the proxy reports to its clients."""


class UpstreamError(ImageProxyError):
    """The origin could not be reached or the transfer broke off."""


class StorageFault(ImageProxyError):
    """Local metadata or blob storage failed or is inconsistent."""
