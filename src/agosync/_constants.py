"""Internal constants shared across the library."""

DEFAULT_AGO_IP = "10.10.10.1"
DEFAULT_AGO_SSID = "AGO"
DEFAULT_AGO_PASSWORD = "12345678"
DEFAULT_UPLOAD_ENDPOINT = "/api/files/programs/custom"
DEFAULT_UPLOAD_FIELD = "json"
CUSTOM_PROGRAMS_PATH = "/api/files/programs/custom"

DEFAULT_POLL_INTERVAL_S: float = 3.0
DEFAULT_WRITE_DEBOUNCE_S: float = 0.3
DEFAULT_PROBE_TIMEOUT_S: float = 2.0
DEFAULT_COMMAND_TIMEOUT_S: float = 15.0
DEFAULT_HTTP_TIMEOUT_S: float = 12.0

# ------------------------------------------------------------------
# Recipe defaults
# ------------------------------------------------------------------

DEVELOPERS: tuple[str, ...] = (
    "510 Pyro",
    "FX-39",
    "HC-110",
    "DDX",
    "Xtol",
    "Rodinal",
)

STEP_NAMES: tuple[str, ...] = ("DEV", "STOP", "FIX", "BLIX", "RINSE", "PRE", "WASH")
AGITATION_OPTIONS: tuple[str, ...] = ("Roll", "Stick", "Stand", "Off")
COMPENSATION_OPTIONS: tuple[str, ...] = ("On", "Mon", "Off")
DEFAULT_TEMPLATE_STEPS: tuple[str, ...] = ("DEV", "STOP", "FIX", "RINSE")

# Default step durations in minutes; unlisted step names get 5.
_DEFAULT_STEP_MINUTES: dict[str, int] = {"DEV": 0, "STOP": 1, "FIX": 5, "RINSE": 10}

#: Settings table keys and their string defaults.
DEFAULT_SETTINGS: dict[str, str] = {
    "ago_ip": DEFAULT_AGO_IP,
    "ago_ssid": DEFAULT_AGO_SSID,
    "ago_password": DEFAULT_AGO_PASSWORD,
    "ago_upload_endpoint": DEFAULT_UPLOAD_ENDPOINT,
    "ago_upload_field": DEFAULT_UPLOAD_FIELD,
    "default_min_temp": "18",
    "default_rated_temp": "20",
    "default_max_temp": "24",
    "export_folder": "",
    "auto_reconnect": "true",
}


def default_step_minutes(name: str) -> int:
    """Return the template duration (minutes) for a step named *name*."""
    return _DEFAULT_STEP_MINUTES.get(name, 5)
