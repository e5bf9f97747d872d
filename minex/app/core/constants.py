"""
Shared constants for the field client.
"""


# Keys in the device key-value store
class StorageKeys:
    AUTH_TOKEN = "@minex/auth_token"
    REFRESH_TOKEN = "@minex/refresh_token"
    USER_DATA = "@minex/user_data"
    OFFLINE_TRIPS = "@minex/offline_trips"  # durable operation queue
    DEAD_LETTER_OPS = "@minex/dead_letter_ops"
    TOKEN_ALIASES = "@minex/token_aliases"  # provisional token -> server token


# Gateway statuses worth retrying; everything else 4xx/5xx is final
TRANSIENT_STATUS_CODES = frozenset({502, 503, 504})

# Provisional token prefix for trips started without a server round trip
LOCAL_TOKEN_PREFIX = "LOCAL-"

# Only the newest aliases of confirmed provisional trips are remembered
MAX_TOKEN_ALIASES = 100

# Endpoints probed, in order, to decide whether the API is reachable
HEALTH_CHECK_PATHS = ("/health", "/api/health", "")
