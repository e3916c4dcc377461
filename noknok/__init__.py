"""noknok - forward-auth gateway for services behind a reverse proxy.

Authenticates browsers through ATProto OAuth, keeps server-side sessions
grouped per browser, and answers the proxy's forward-auth sub-requests with
allow/deny/redirect verdicts plus identity headers.
"""

__version__ = "0.3.0"

from noknok.config import Settings, get_settings, load_settings_from_file, set_settings

__all__ = [
    "Settings",
    "__version__",
    "get_settings",
    "load_settings_from_file",
    "set_settings",
]
