"""Internal constants shared across the exporter."""

AUTH_URL = "https://auth.tesla.com/oauth2/v3/token"
API_BASE_URL = "https://owner-api.teslamotors.com"
CLIENT_ID = "ownerapi"
SCOPE = "openid email offline_access"
USER_AGENT = "jarvis-tesla-exporter"

#: HTTP status codes the token endpoint uses to reject a refresh token.
AUTH_REJECTED_STATUSES: frozenset[int] = frozenset({400, 401, 403})

#: Label used when a vehicle is outside every configured geofence.
LOCATION_OTHER = "Other"
DEFAULT_DISPLAY_NAME = "Unknown"

# ------------------------------------------------------------------
# Unit conversions
# ------------------------------------------------------------------

METERS_PER_MILE = 1609.344
JOULES_PER_KWH = 1000.0 * 3600.0
WATTS_PER_KW = 1000.0
EARTH_RADIUS_METERS = 6_371_008.8
