"""Factory for configured service clients.

Construction is pure: configs are checked and headers assembled, but no
request is sent. Tokens are fetched by the caller right before building the
client and are not kept beyond its lifetime.
"""

from dataclasses import replace

import httpx

from cloud_helpers.config.settings import AppIDConfig, KeyProtectConfig, ServiceConfig
from cloud_helpers.http.policy import RetryPolicy
from cloud_helpers.http.resilient import ResilientClient, RetryHook

KMS_KEY_MEDIA_TYPE = "application/vnd.ibm.kms.key+json"


def make_client(
    config: ServiceConfig,
    base_url: str,
    *,
    token: str | None = None,
    headers: dict | None = None,
    auth: tuple[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    policy: RetryPolicy | None = None,
    on_retry: RetryHook | None = None,
) -> ResilientClient:
    """Build a ResilientClient carrying the config's retry policy (or ``policy``)."""
    config.check_required()

    all_headers = dict(headers or {})
    if token is not None:
        all_headers["Authorization"] = f"Bearer {token}"

    return ResilientClient(
        base_url,
        policy or config.retry_policy(),
        service_name=config.service_label,
        headers=all_headers,
        auth=auth,
        transport=transport,
        on_retry=on_retry,
    )


def make_keyprotect_client(
    config: KeyProtectConfig,
    token: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ResilientClient:
    return make_client(
        config,
        config.url,
        token=token,
        headers={
            "Accept": KMS_KEY_MEDIA_TYPE,
            "bluemix-instance": config.instance_id,
        },
        transport=transport,
    )


def make_appid_login_client(
    config: AppIDConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ResilientClient:
    """Client for the password-grant token endpoint (basic auth with the app credentials)."""
    return make_client(
        config,
        f"{config.oauth_url}/token",
        headers={
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        },
        auth=(config.client_id, config.secret),
        transport=transport,
    )


def make_appid_management_client(
    config: AppIDConfig,
    token: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ResilientClient:
    config.check_management()
    return make_client(
        config,
        config.management_url,
        token=token,
        headers={
            "Content-Type": "application/json",
            "Accept": "application/json",
        },
        transport=transport,
    )


def make_appid_ping_client(
    config: AppIDConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ResilientClient:
    return make_client(
        config,
        config.ping_url,
        headers={"Accept": "application/json"},
        policy=replace(config.retry_policy(), max_retries=0),
        transport=transport,
    )
