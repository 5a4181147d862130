"""Internal constants for the Govee cloud API and MQTT brokers."""

from __future__ import annotations

from pathlib import Path

API_BASE = "https://openapi.api.govee.com/router/api/v1"
API_KEY_HEADER = "Govee-API-Key"

APP_BASE = "https://app2.govee.com"
LOGIN_URL = f"{APP_BASE}/account/rest/account/v1/login"
DEVICE_LIST_URL = f"{APP_BASE}/device/rest/devices/v1/list"
APP_VERSION = "5.6.01"

MQTT_HOST = "aqm3wd1qlc3dy-ats.iot.us-east-1.amazonaws.com"
MQTT_PORT = 8883
MQTT_KEEPALIVE = 60
ACCOUNT_TOPIC_PREFIX = "GA"

HTTP_TIMEOUT = 15  # seconds
DEFAULT_TOKEN_LIFETIME = 57_600  # seconds, used when login omits tokenExpireCycle
TOKEN_EXPIRY_BUFFER = 3600  # seconds before expiry to trigger proactive re-login

PROTECTION_WINDOW = 3.0  # seconds a local write is immune to incoming state
BRIGHTNESS_DEBOUNCE = 0.3  # seconds of slider silence before a write is sent
POLL_INTERVAL = 5.0  # seconds between state refreshes
RECONNECT_INTERVAL = 5  # seconds between MQTT reconnection attempts

CRED_DIR = Path.home() / ".config" / "goveectl"
CRED_FILE = CRED_DIR / "credentials.json"
CERT_DIR = CRED_DIR / "certs"

API_KEY_ENV = "GOVEE_API_KEY"

APP_HEADERS: dict[str, str] = {
    "appVersion": APP_VERSION,
    "clientType": "1",
    "iotVersion": "0",
    "User-Agent": f"GoveeHome/{APP_VERSION} (com.ihoment.GoVeeSensor; build:2; iOS 16.5.0)",
}
