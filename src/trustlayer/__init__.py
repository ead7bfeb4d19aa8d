"""
TrustLayer - Account Security & Trust Layer
Audit logging, brute force protection, TOTP, API key rotation, certificate
pinning and security monitoring over a remote table store.
"""

__version__ = "0.1.0"

from trustlayer.core.config import settings
from trustlayer.core.logging import get_logger

__all__ = ["settings", "get_logger", "__version__"]
