"""Shared fixtures for the cloud_helpers test suite."""

import json
import logging
from unittest.mock import AsyncMock

import httpx
import pytest

from cloud_helpers.config.settings import AppIDConfig, CloudantConfig, KeyProtectConfig, get_settings
from cloud_helpers.keyprotect.models import encode_payload

KP_URL = "https://kms.test/api/v2/keys"
APPID_URL = "https://appid.test"
TENANT = "tenant-1"


@pytest.fixture(autouse=True)
def restore_log_propagation():
    """setup_logging() turns propagation off; keep caplog working for later tests."""
    yield
    logger = logging.getLogger("cloud_helpers")
    logger.handlers.clear()
    logger.propagate = True


@pytest.fixture
def override_settings(monkeypatch):
    """Factory fixture: set env vars and clear settings cache.

    Usage:
        override_settings(LOG_LEVEL="INFO", LOG_FILE="/tmp/x.log")
    """
    def _override(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        # Clear lru_cache so Settings re-reads env
        get_settings.cache_clear()

    yield _override

    # Always clear cache on teardown so other tests get fresh settings
    get_settings.cache_clear()


@pytest.fixture
def keyprotect_config() -> KeyProtectConfig:
    return KeyProtectConfig(
        url=KP_URL,
        instance_id="instance-guid",
        apikey="kp-apikey",
        retries=2,
        retry_delay=1,
        timeout=5000,
    )


@pytest.fixture
def appid_config() -> AppIDConfig:
    return AppIDConfig(
        url=APPID_URL,
        client_id="client-id",
        tenant_id=TENANT,
        secret="client-secret",
        apikey="appid-apikey",
        user_name="qa-user",
        user_tenant_id="user-tenant",
        retries=1,
        retry_delay=1,
        timeout=5000,
    )


@pytest.fixture
def cloudant_config() -> CloudantConfig:
    return CloudantConfig(
        url="https://cloudant.test",
        account="acct",
        iam_api_key="cl-apikey",
        db_partition_key="part",
        retries=1,
        retry_delay=1,
        timeout=5000,
    )


@pytest.fixture
def token_provider() -> AsyncMock:
    return AsyncMock(return_value="test-token")


class FakeKeyProtect:
    """In-memory Key Protect behind an httpx.MockTransport.

    ``calls`` records (method, key id or "") in order.
    """

    def __init__(self, keys: list[dict] | None = None):
        self.keys = list(keys or [])
        self.calls: list[tuple[str, str]] = []
        self.fail: dict[str, int] = {}  # method -> status to answer with
        self._next_id = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        key_id = request.url.path[len("/api/v2/keys"):].strip("/")
        self.calls.append((request.method, key_id))

        if request.method in self.fail:
            return httpx.Response(
                self.fail[request.method],
                json={"resources": [{"errorMsg": "boom"}]},
            )

        if request.method == "GET" and not key_id:
            listed = [{k: v for k, v in key.items() if k != "payload"} for key in self.keys]
            return httpx.Response(200, json={"metadata": {"collectionTotal": len(listed)}, "resources": listed})

        if request.method == "GET":
            for key in self.keys:
                if key["id"] == key_id:
                    return httpx.Response(200, json={"resources": [key]})
            return httpx.Response(404, json={"resources": [{"errorMsg": "Not Found"}]})

        if request.method == "DELETE":
            self.keys = [k for k in self.keys if k["id"] != key_id]
            return httpx.Response(204)

        if request.method == "POST":
            body = json.loads(request.content)
            resource = body["resources"][0]
            self._next_id += 1
            new_key = {
                "id": f"new-{self._next_id}",
                "name": resource["name"],
                "creationDate": "2030-01-01T00:00:00Z",
                "payload": resource["payload"],
            }
            self.keys.append(new_key)
            return httpx.Response(201, json={"resources": [new_key]})

        return httpx.Response(405)

    def names(self) -> list[str]:
        return [k["name"] for k in self.keys]


def make_key(key_id: str, name: str, created: str, payload=None) -> dict:
    key = {"id": key_id, "name": name, "creationDate": created}
    if payload is not None:
        key["payload"] = encode_payload(payload)
    return key


class FakeAppID:
    """In-memory App ID tenant behind an httpx.MockTransport.

    ``calls`` records a short name per request, in order.
    """

    def __init__(self, users: dict[str, str] | None = None):
        self.users = dict(users or {})  # email -> password
        self.user_ids: dict[str, str] = {f"id-{email}": email for email in self.users}
        self.roles = ["role-a", "role-b"]
        self.assigned_roles: dict[str, list[str]] = {}
        self.attributes: dict[str, dict] = {}
        self.calls: list[str] = []
        self.fail: set[str] = set()  # call names answered with 400
        self.replies: dict[str, dict] = {}  # call name -> httpx.Response kwargs for a 200 answer

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        name = self._name(request.method, path)
        self.calls.append(name)

        if name in self.fail:
            return httpx.Response(400, json={"error": "invalid_request", "error_description": f"{name} failed"})
        if name in self.replies:
            return httpx.Response(200, **self.replies[name])

        if name == "login":
            form = dict(httpx.QueryParams(request.content.decode()))
            if self.users.get(form.get("username")) == form.get("password"):
                return httpx.Response(200, json={"access_token": "user-token"})
            return httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "Wrong email or password"}
            )
        if name == "publickeys":
            return httpx.Response(200, json={"keys": []})
        if name == "list-roles":
            return httpx.Response(200, json={"roles": [{"id": r, "name": r} for r in self.roles]})
        if name == "create-account":
            body = json.loads(request.content)
            email = body["emails"][0]["value"]
            self.users[email] = body["password"]
            self.user_ids[f"id-{email}"] = email
            return httpx.Response(201, json={"id": f"cd-{email}"})
        if name == "list-users":
            users = [{"id": uid, "email": email} for uid, email in self.user_ids.items()]
            return httpx.Response(200, json={"users": users})
        if name == "update-roles":
            user_id = path.split("/")[-2]
            self.assigned_roles[user_id] = json.loads(request.content)["roles"]["ids"]
            return httpx.Response(200, json={})
        if name == "update-attributes":
            user_id = path.split("/")[-2]
            self.attributes[user_id] = json.loads(request.content)["attributes"]
            return httpx.Response(200, json={})
        return httpx.Response(404)

    @staticmethod
    def _name(method: str, path: str) -> str:
        if path.endswith("/token"):
            return "login"
        if path.endswith("/publickeys"):
            return "publickeys"
        if path.endswith("/roles") and method == "GET":
            return "list-roles"
        if path.endswith("/cloud_directory/Users"):
            return "create-account"
        if path.endswith("/users"):
            return "list-users"
        if path.endswith("/roles"):
            return "update-roles"
        if path.endswith("/profile"):
            return "update-attributes"
        return f"{method} {path}"

    def mutations(self) -> list[str]:
        return [c for c in self.calls if c in ("create-account", "update-roles", "update-attributes")]
