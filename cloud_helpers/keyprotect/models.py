"""Key records and payload encoding for the key-management service."""

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime, timezone

from cloud_helpers.logging.json_log import get_logger

logger = get_logger("keyprotect")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_creation_date(value) -> datetime:
    """Parse an ISO-8601 creation date. Missing or malformed dates sort as oldest."""
    if not value:
        return EPOCH
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class KeyRecord:
    id: str
    name: str
    creation_date: datetime = EPOCH
    payload: str | None = None  # base64-encoded JSON, only present on single-key reads

    @classmethod
    def from_resource(cls, resource: dict) -> "KeyRecord":
        return cls(
            id=resource.get("id", ""),
            name=resource.get("name", ""),
            creation_date=parse_creation_date(resource.get("creationDate")),
            payload=resource.get("payload"),
        )


def encode_payload(payload) -> str:
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def decode_payload(encoded: str):
    return json.loads(base64.b64decode(encoded).decode("utf-8"))


def _first_resource(body) -> dict:
    if isinstance(body, dict):
        resources = body.get("resources") or []
        if resources and isinstance(resources[0], dict):
            return resources[0]
    return {}


def parse_key_payload(body):
    """Decode the payload of the first resource in a response body, or None."""
    payload = _first_resource(body).get("payload")
    if not payload:
        logger.warning("Payload not found for key from KeyProtect")
        return None
    try:
        decoded = decode_payload(payload)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        logger.warning(f"Failed to parse key from KeyProtect: {e}")
        return None
    logger.debug("Successfully parsed key from KeyProtect")
    return decoded


def parse_key_id(body) -> str | None:
    key_id = _first_resource(body).get("id")
    if not key_id:
        logger.warning("ID not found for key from KeyProtect")
        return None
    return key_id
