"""
TrustLayer error hierarchy
"""


class TrustLayerError(Exception):
    """Base class for all TrustLayer errors"""
    pass
