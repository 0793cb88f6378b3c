# -*- coding: utf-8 -*-

# --- CONSTANTS AND FILE PATHS ---

# Capability names used by the allow-lists.
CAP_LOCATION, CAP_ARCHIVE, CAP_WORKBOOK, CAP_OCR, CAP_KML, CAP_GEOTAGS = (
    "location", "archive", "workbook", "ocr", "kml", "geotags"
)
ALL_CAPABILITIES = (CAP_LOCATION, CAP_ARCHIVE, CAP_WORKBOOK, CAP_OCR, CAP_KML, CAP_GEOTAGS)

# Environment variable holding the allow-list for each capability.
CAPABILITY_ENV_VARS = {
    CAP_LOCATION: "LOKASI_ACCESS_USERS",
    CAP_ARCHIVE: "RAR_ACCESS_USERS",
    CAP_WORKBOOK: "WORKBOOK_ACCESS_USERS",
    CAP_OCR: "OCR_ACCESS_USERS",
    CAP_KML: "KML_ACCESS_USERS",
    CAP_GEOTAGS: "GEOTAGS_ACCESS_USERS",
}

# Per-user sub-directories (below <BASE_DATA_PATH>/<user_id>).
ARCHIVE_DIR_NAME = "rar_files"
OCR_DIR_NAME = "ocr_files"
WORKBOOK_DIR_NAME = "workbook_media"
LOCATION_CACHE_DIR_NAME = "lokasi_cache"
KML_DATA_FILE_NAME = "kml_data.json"
KML_EXPORT_DIR_NAME = "kml_exports"
WORKBOOK_FILE_NAME = "ImageAllSheet.xlsx"

# Timeouts (seconds).
MEASUREMENT_TIMEOUT_SECONDS = 10 * 60
LAST_MEASUREMENT_RETENTION_SECONDS = 30
PROCESSED_CACHE_CLEAR_INTERVAL_SECONDS = 5 * 60
HTTP_TIMEOUT_SECONDS = 10

# Limits.
SEARCH_RESULT_LINE_CAP = 20
WORKBOOK_MAX_BYTES = 50 * 1024 * 1024
MESSAGE_CHUNK_SIZE = 4000
ARCHIVE_EXTENSIONS = (".zip", ".rar")

# Transport modes for distance measurement.
TRANSPORT_CAR, TRANSPORT_MOTORCYCLE, TRANSPORT_FOOT = ("car", "motorcycle", "foot")
TRANSPORT_ALIASES = {
    "car": TRANSPORT_CAR, "mobil": TRANSPORT_CAR,
    "motor": TRANSPORT_MOTORCYCLE, "motorcycle": TRANSPORT_MOTORCYCLE,
    "foot": TRANSPORT_FOOT, "jalan": TRANSPORT_FOOT, "kaki": TRANSPORT_FOOT,
}
TRANSPORT_LABELS = {
    TRANSPORT_CAR: "Car",
    TRANSPORT_MOTORCYCLE: "Motorcycle",
    TRANSPORT_FOOT: "Walking",
}
# OpenRouteService has no motorcycle profile; car is the closest approximation.
ORS_PROFILES = {
    TRANSPORT_CAR: "driving-car",
    TRANSPORT_MOTORCYCLE: "driving-car",
    TRANSPORT_FOOT: "foot-walking",
}
FALLBACK_SPEED_KMH = 50

# Uniform replies shared by the router and the feature handlers.
NOT_REGISTERED_TEXT = "Sorry {name} ({user_id}), you are not registered to use this bot."
NO_ACCESS_TEXT = "Sorry, you do not have access to the {feature} feature."
GENERIC_ERROR_TEXT = "Something went wrong while processing your request. Please try again."
