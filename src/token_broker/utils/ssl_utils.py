"""TLS trust store setup for token endpoint connections.

Token endpoints behind corporate TLS inspection present certificates signed
by enterprise CAs that are missing from certifi's bundle. truststore makes
the ssl module verify against the OS certificate store instead.
"""

import logging
import platform

logger = logging.getLogger(__name__)

_ssl_initialized = False


def init_ssl() -> bool:
    """
    Inject the OS native certificate store into Python's SSL context.

    Call once at startup, before the first HTTPS request. Repeated calls
    are no-ops.

    Returns:
        True if the OS trust store is in use, False otherwise.
    """
    global _ssl_initialized

    if _ssl_initialized:
        return True

    try:
        import truststore
    except ImportError:
        logger.warning(
            "truststore package not installed, using the default certificate bundle"
        )
        return False

    try:
        truststore.inject_into_ssl()
    except Exception as e:
        logger.warning(f"Failed to inject truststore: {e}")
        return False

    _ssl_initialized = True
    logger.debug(f"SSL truststore injected for {platform.system()}")
    return True
