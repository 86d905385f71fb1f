"""Internal constants for the EcoFlow cloud API and MQTT broker."""

from __future__ import annotations

from pathlib import Path

API_BASE = "https://api.ecoflow.com"

DEVICE_LIST_PATH = "/iot-open/sign/device/list"
QUOTA_ALL_PATH = "/iot-open/sign/device/quota/all"
QUOTA_PATH = "/iot-open/sign/device/quota"

LOGIN_PATH = "/auth/login"
CERTIFICATION_PATH = "/iot-auth/app/certification"

# Fixed tags the app login endpoint expects
LOGIN_SCENE = "IOT_APP"
LOGIN_USER_TYPE = "ECOFLOW"

ACCESS_KEY_HEADER = "accessKey"
NONCE_HEADER = "nonce"
TIMESTAMP_HEADER = "timestamp"
SIGN_HEADER = "sign"

JSON_CONTENT_TYPE = "application/json;charset=UTF-8"

APP_HEADERS: dict[str, str] = {
    "lang": "en_US",
    "Content-Type": "application/json",
}

SUCCESS_CODE = "0"

DEVICE_TOPIC = "/app/device/property/{sn}"
CLIENT_ID_PREFIX = "ANDROID"

PERMANENT_WATTS_CMD = "WN511_SET_PERMANENT_WATTS_PACK"

CRED_DIR = Path.home() / ".config" / "ecostream"
CRED_FILE = CRED_DIR / "credentials.json"
