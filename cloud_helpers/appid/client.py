"""IBM App ID helpers: health check, password login and Cloud Directory management."""

import httpx

from cloud_helpers.auth.iam import TokenProvider
from cloud_helpers.clients.factory import (
    make_appid_login_client,
    make_appid_management_client,
    make_appid_ping_client,
)
from cloud_helpers.config.settings import AppIDConfig
from cloud_helpers.errors import RemoteCallError, RemoteError, json_body
from cloud_helpers.http.resilient import ResilientClient
from cloud_helpers.logging.json_log import get_logger

logger = get_logger("appid")


class UserLookupError(RemoteCallError):
    """The directory has no user whose email matches the requested username."""

    def __init__(self, username: str):
        super().__init__(404, "Not Found", f"No App ID user with email {username}")
        self.username = username


class AppIDService:
    """Thin wrapper over the App ID OAuth and management endpoints."""

    def __init__(
        self,
        config: AppIDConfig,
        token_provider: TokenProvider,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self._token_provider = token_provider
        self._transport = transport

    async def ping(self) -> bool:
        """True if the public-keys endpoint answers."""
        try:
            async with make_appid_ping_client(self.config, self._transport) as client:
                await client.get()
        except RemoteCallError as e:
            logger.error(f"AppID health is not OK: {e}")
            return False
        logger.info("AppID health is OK")
        return True

    async def login(self, username: str, password: str) -> dict:
        """Password-grant login. Returns the token response body.

        Raises RemoteCallError; its ``message`` is App ID's
        ``error_description`` when one was returned.
        """
        self.config.check_required()
        try:
            async with make_appid_login_client(self.config, self._transport) as client:
                logger.debug("Calling AppID to retrieve auth token")
                response = await client.post(
                    "",
                    data={"username": username, "password": password, "grant_type": "password"},
                )
        except RemoteCallError as e:
            logger.error(f"Login request to AppID failed: {e}")
            raise
        logger.info("Login request to AppID was successful")
        return json_body(response)

    async def management_client(self) -> ResilientClient:
        """Management API client authorised with a fresh IAM token."""
        self.config.check_management()
        token = await self._token_provider(self.config.apikey)
        return make_appid_management_client(self.config, token, self._transport)

    async def get_all_role_ids(self, client: ResilientClient) -> list[str]:
        logger.debug("Getting all roles ids")
        try:
            response = await client.get("roles")
            try:
                return [role["id"] for role in json_body(response).get("roles", [])]
            except (KeyError, TypeError) as e:
                raise RemoteError.invalid_body(response, "roles without ids") from e
        except RemoteCallError as e:
            logger.error(f"Failed to get roles from AppID: {e}")
            raise

    async def create_user(self, client: ResilientClient, username: str, password: str) -> None:
        """Create a Cloud Directory user whose primary email is ``username``."""
        logger.debug("Creating new user in Cloud Directory")
        data = {
            "active": True,
            "emails": [{"value": username, "primary": True}],
            "name": {
                "givenName": "QA",
                "familyName": "User",
                "formatted": "QA User",
            },
            "userName": self.config.user_name,
            "password": password,
        }
        try:
            await client.post("cloud_directory/Users", json=data)
        except RemoteCallError as e:
            logger.error(
                f"Failed to create user in cloud directory: {e}",
                extra={"context": {"username": username}},
            )
            raise

    async def find_user_id(self, client: ResilientClient, username: str, password: str) -> str:
        """Log in as the new user, then look up its id by email.

        App ID only lists a Cloud Directory user under /users after its
        first login, so the login doubles as activation.
        """
        logger.debug("Activating new user profile")
        try:
            await self.login(username, password)
            response = await client.get("users")
            try:
                for user in json_body(response).get("users", []):
                    if user.get("email") == username:
                        return user["id"]
            except (KeyError, TypeError, AttributeError) as e:
                raise RemoteError.invalid_body(response, "malformed user list") from e
            raise UserLookupError(username)
        except RemoteCallError as e:
            logger.error(f"Failed to get new user ID: {e}", extra={"context": {"username": username}})
            raise

    async def update_user_roles(self, client: ResilientClient, user_id: str, role_ids: list[str]) -> None:
        logger.debug("Updating new user roles")
        try:
            await client.put(f"users/{user_id}/roles", json={"roles": {"ids": role_ids}})
        except RemoteCallError as e:
            logger.error(f"Failed to update roles: {e}", extra={"context": {"user_id": user_id}})
            raise

    async def update_user_attributes(self, client: ResilientClient, user_id: str) -> None:
        """Tag the user's profile with the configured tenant id."""
        logger.debug("Updating new user attributes")
        try:
            await client.put(
                f"users/{user_id}/profile",
                json={"attributes": {"TenantID": self.config.user_tenant_id}},
            )
        except RemoteCallError as e:
            logger.error(f"Failed to update attributes: {e}", extra={"context": {"user_id": user_id}})
            raise
