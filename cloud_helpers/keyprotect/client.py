"""IBM Key Protect helpers.

Keys are looked up by name. A name is meant to map to a single key: when
several keys share it, the newest (by creation date) is kept and the others
are deleted as they are found. Reads degrade to empty results on failure;
create and delete failures are raised as KeyProtectError.
"""

import json

import httpx

from cloud_helpers.auth.iam import TokenProvider
from cloud_helpers.clients.factory import KMS_KEY_MEDIA_TYPE, make_keyprotect_client
from cloud_helpers.config.settings import KeyProtectConfig
from cloud_helpers.errors import KeyProtectError, RemoteCallError, RemoteError, degrade, json_body
from cloud_helpers.http.resilient import ResilientClient
from cloud_helpers.keyprotect.models import KeyRecord, encode_payload, parse_key_id, parse_key_payload
from cloud_helpers.logging.json_log import get_logger

logger = get_logger("keyprotect")

DEFAULT_KEY_DESCRIPTION = "Simple Consent Blockchain Admin Identity"


class KeyProtectService:
    """Key lookup, creation and cleanup against one Key Protect instance."""

    def __init__(
        self,
        config: KeyProtectConfig,
        token_provider: TokenProvider,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self._token_provider = token_provider
        self._transport = transport

    async def _client(self) -> ResilientClient:
        """Fresh client with a fresh token."""
        self.config.check_required()
        token = await self._token_provider(self.config.apikey)
        return make_keyprotect_client(self.config, token, self._transport)

    # -- reads ------------------------------------------------------------

    async def get_all_keys(
        self, client: ResilientClient | None = None, best_effort: bool = True
    ) -> list[KeyRecord]:
        self.config.check_required()
        if client is None:
            async with await self._client() as client:
                return await self._list_keys(client, best_effort)
        return await self._list_keys(client, best_effort)

    async def _list_keys(self, client: ResilientClient, best_effort: bool) -> list[KeyRecord]:
        async def _list() -> list[KeyRecord]:
            response = await client.get()
            resources = json_body(response).get("resources") or []
            if not isinstance(resources, list) or not all(isinstance(r, dict) for r in resources):
                raise RemoteError.invalid_body(response, "resources is not a list of keys")
            records = [KeyRecord.from_resource(r) for r in resources]
            logger.info(f"Successfully retrieved {len(records)} keys from KeyProtect")
            return records

        return await degrade(
            _list(), [], logger, "Failed to retrieve keys from KeyProtect", enabled=best_effort
        )

    async def get_keys_by_name(
        self, name: str, client: ResilientClient | None = None, best_effort: bool = True
    ) -> list[KeyRecord]:
        records = await self.get_all_keys(client, best_effort=best_effort)
        matching = [r for r in records if r.name == name]
        logger.info(
            f"Successfully retrieved {len(matching)} key id(s) for name = {name} from KeyProtect"
        )
        return matching

    async def get_key_by_id(self, key_id: str, best_effort: bool = True):
        """Decoded payload of a key, or None."""
        self.config.check_required()

        async def _get():
            async with await self._client() as client:
                response = await client.get(key_id)
            logger.info(f"Successfully retrieved key {key_id} from KeyProtect")
            return parse_key_payload(json_body(response))

        return await degrade(
            _get(), None, logger, f"Failed to retrieve key {key_id} from KeyProtect", enabled=best_effort
        )

    async def get_newest_key_by_name(self, name: str, best_effort: bool = True):
        """Decoded payload of the newest key called ``name``, or None.

        Older keys with the same name are deleted on the way.
        """
        self.config.check_required()

        async def _get():
            async with await self._client() as client:
                key_id = await self.find_newest_key_id(name, client, best_effort=best_effort)
                if not key_id:
                    logger.warning(f"Key {name} not found in KeyProtect")
                    return None
                response = await client.get(key_id)
            logger.info(
                f"Successfully retrieved newest key for name = {name} from KeyProtect (id = {key_id})"
            )
            return parse_key_payload(json_body(response))

        return await degrade(
            _get(), None, logger, f"Failed to retrieve key {name} from KeyProtect", enabled=best_effort
        )

    # -- reconciliation ---------------------------------------------------

    async def find_newest_key_id(
        self, name: str, client: ResilientClient | None = None, best_effort: bool = True
    ) -> str | None:
        """Return the id of the newest key called ``name``, deleting the rest.

        Keys are walked in listing order. Whenever a key at least as new as
        the current newest shows up, the current newest is deleted and
        replaced; a key strictly older than the current newest is deleted
        directly. With equal creation dates the key listed later survives.

        With ``best_effort`` a failed listing reads as "no key"; without it
        the listing error is raised.
        """
        newest: KeyRecord | None = None
        for record in await self.get_keys_by_name(name, client, best_effort=best_effort):
            if newest is not None and record.creation_date < newest.creation_date:
                logger.warning(f"Attempting to delete older key {record.id} with name {name} in KeyProtect")
                await self.delete_key(record.id)
                continue
            if newest is not None:
                logger.warning(f"Attempting to delete older key {newest.id} with name {name} in KeyProtect")
                await self.delete_key(newest.id)
            newest = record
        return newest.id if newest else None

    # -- mutations --------------------------------------------------------

    async def delete_key(self, key_id: str) -> None:
        self.config.check_required()
        try:
            async with await self._client() as client:
                await client.delete(key_id)
        except RemoteCallError as e:
            message = f"Failed to delete key {key_id} in KeyProtect: {e.failure_reasons()}"
            logger.error(message, extra={"context": {"key_id": key_id, "status": e.status}})
            raise KeyProtectError.wrap(message, e) from e
        logger.info(f"Successfully deleted key {key_id} in KeyProtect")

    async def create_key(self, name: str, payload, description: str = DEFAULT_KEY_DESCRIPTION) -> str:
        """Replace every key called ``name`` with a new one holding ``payload``.

        Returns the new key id.
        """
        if not name:
            raise ValueError("keyName is empty")
        if not payload:
            raise ValueError("keyPayload is empty")
        self.config.check_required()

        try:
            async with await self._client() as client:
                logger.debug("Attempting to check for existing key (before creating new key)")
                existing_id = await self.find_newest_key_id(name, client, best_effort=False)
                if existing_id:
                    logger.debug("Existing key found, attempting to delete (before creating new key)")
                    await self.delete_key(existing_id)

                body = {
                    "metadata": {
                        "collectionType": KMS_KEY_MEDIA_TYPE,
                        "collectionTotal": 1,
                    },
                    "resources": [
                        {
                            "type": KMS_KEY_MEDIA_TYPE,
                            "name": name,
                            "description": description,
                            "extractable": True,
                            "payload": encode_payload(payload),
                        }
                    ],
                }
                response = await client.post(
                    "",
                    content=json.dumps(body),
                    headers={"Content-Type": KMS_KEY_MEDIA_TYPE},
                )
                created = json_body(response)
        except RemoteCallError as e:
            message = f"Failed to create key in KeyProtect: {e.failure_reasons()}"
            logger.error(message, extra={"context": {"key_name": name, "status": e.status}})
            raise KeyProtectError.wrap(message, e) from e

        key_id = parse_key_id(created)
        if not key_id:
            message = "Failed to create key in KeyProtect: ID not found in response"
            logger.error(message, extra={"context": {"key_name": name}})
            raise KeyProtectError(response.status_code, response.reason_phrase, message, created)

        logger.info(f"Successfully created key {key_id} in KeyProtect")
        return key_id

    async def ensure_key(self, name: str, payload) -> str:
        """Leave exactly one key called ``name``: a new one holding ``payload``."""
        return await self.create_key(name, payload)
