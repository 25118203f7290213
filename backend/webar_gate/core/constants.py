"""Shared constants for the gate.

Centralizes values used across geofencing, media negotiation and the
document store so they can be documented and adjusted in one place.
"""

# Mean Earth radius in meters (haversine)
EARTH_RADIUS_M = 6371000.0

# Device secret size in bytes
DEVICE_SECRET_BYTES = 32
DEVICE_SECRET_KEY = "deviceSecret"

# Frame sampling for alpha correction: max side of the downscaled frame,
# and the number of grid samples per axis.
SAMPLE_MAX_SIDE = 64
SAMPLE_GRID = 4
# Alpha values at or above this count as opaque
OPAQUE_ALPHA_MIN = 250
# Max channel spread (0-255) for an SBS mask pixel to count as greyscale
MASK_GREY_TOLERANCE = 24

# MIME types declared for each media kind
MIME_WEBM_ALPHA = 'video/webm; codecs="vp8,opus"'
MIME_MP4 = "video/mp4"
MIME_QUICKTIME = "video/quicktime"

# Document store collections
COLLECTION_LOCATIONS = "locations"
COLLECTION_VIDEOS = "videos"
COLLECTION_PHONE_REGS = "phone_regs"
COLLECTION_DEVICE_KEYS = "device_keys"
COLLECTION_SCAN_LOGS = "scan_logs"

# Ranged probe size for the HTTP probe sink
PROBE_RANGE_BYTES = 4096
