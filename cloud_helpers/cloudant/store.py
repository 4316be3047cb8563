"""Cloudant document store with partitioned databases.

Wraps the synchronous ibmcloudant SDK; every call runs in a worker thread
via asyncio.to_thread. SDK errors are re-raised as RemoteError, and
connection failures from requests as TransportError, so callers see the
same error shapes as from the HTTP helpers.
"""

import asyncio
from typing import Any

import requests
from ibm_cloud_sdk_core import ApiException
from ibm_cloud_sdk_core.authenticators import BasicAuthenticator, IAMAuthenticator
from ibmcloudant.cloudant_v1 import BulkDocs, CloudantV1

from cloud_helpers.config.settings import CloudantConfig
from cloud_helpers.errors import (
    ConfigurationError,
    RemoteCallError,
    RemoteError,
    RemoteTimeoutError,
    TransportError,
)
from cloud_helpers.logging.json_log import get_logger

logger = get_logger("cloudant")


def build_service(config: CloudantConfig) -> CloudantV1:
    """Create an SDK client. IAM auth wins over basic auth when both are configured."""
    config.check_required()

    if config.uses_iam_auth:
        logger.info("Use IAM auth for DB connection")
        service = CloudantV1(authenticator=IAMAuthenticator(apikey=config.iam_api_key))
        service.set_service_url(config.url)
    elif config.uses_basic_auth:
        logger.info("Use legacy auth for DB connection")
        service = CloudantV1(
            authenticator=BasicAuthenticator(username=config.username, password=config.password)
        )
        service.set_service_url(config.proxy_url or config.url)
    else:
        raise ConfigurationError("Missing DB credentials")

    if config.retries:
        service.enable_retries(
            max_retries=config.retries,
            retry_interval=(config.retry_delay or 0) / 1000,
        )
    if config.timeout:
        service.set_http_config({"timeout": config.timeout / 1000})
    return service


def _remote_error(e: ApiException) -> RemoteError:
    payload = None
    reason = ""
    if e.http_response is not None:
        reason = e.http_response.reason or ""
        try:
            payload = e.http_response.json()
        except ValueError:
            payload = e.http_response.text
    return RemoteError(e.status_code, reason, e.message or "", payload)


class CloudantStore:
    """Async facade over one Cloudant account."""

    def __init__(self, config: CloudantConfig):
        self.config = config
        self._service: CloudantV1 | None = None

    @property
    def is_ready(self) -> bool:
        return self._service is not None

    async def setup(self) -> None:
        """Lazy-init the SDK client (no request is sent)."""
        if self._service is None:
            try:
                self._service = build_service(self.config)
            except ConfigurationError as e:
                logger.error(f"Failed to init Cloudant: {e}")
                raise

    def _call_sync(self, operation: str, **kwargs) -> Any:
        if self._service is None:
            raise ConfigurationError(
                "Cloudant was not initialized during startup, please check configuration"
            )
        try:
            return getattr(self._service, operation)(**kwargs).get_result()
        except ApiException as e:
            raise _remote_error(e) from e
        except requests.Timeout as e:
            raise RemoteTimeoutError(type(e).__name__, str(e) or "Request to Cloudant timed out") from e
        except requests.RequestException as e:
            raise TransportError(type(e).__name__, str(e) or type(e).__name__) from e

    async def _call(self, operation: str, **kwargs) -> Any:
        return await asyncio.to_thread(self._call_sync, operation, **kwargs)

    # -- health -----------------------------------------------------------

    async def ping(self) -> bool:
        try:
            reply = await self._call("get_session_information")
        except RemoteCallError as e:
            logger.error(f"Failed to ping Cloudant: {e.message}")
            return False
        logger.info("Cloudant pinged successfully", extra={"context": {"session": reply}})
        return True

    async def check_connection(self) -> bool:
        """Ping bounded by the configured timeout."""
        timeout = (self.config.timeout or 0) / 1000 or None
        try:
            return await asyncio.wait_for(self.ping(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"Cloudant service error: Request timed out after {self.config.timeout} ms")
            return False

    # -- databases --------------------------------------------------------

    async def get_or_create_db(self, db: str, indexes: list[dict] | None = None) -> None:
        try:
            await self._call("get_database_information", db=db)
            logger.info(f"Successfully got Cloudant database {db}")
        except RemoteCallError as e:
            logger.error(f"Failed to get Cloudant database {db}: {e.message}")
            await self.create_db(db, indexes)

    async def create_db(self, db: str, indexes: list[dict] | None = None) -> None:
        """Create a partitioned database, then its indexes and design documents.

        An entry of ``indexes`` whose first key is ``index`` is a Mango index
        definition; any other entry is a design document.
        """
        try:
            await self._call("put_database", db=db, partitioned=True)
            logger.info(f"Created Cloudant database {db}")

            for payload in indexes or []:
                if next(iter(payload), None) == "index":
                    await self.create_index(db, payload)
                else:
                    await self.create_design_document(db, payload)
        except RemoteCallError as e:
            logger.error(f"Failed to create Cloudant database {db}: {e.message}")
            raise

    async def create_index(self, db: str, params: dict) -> None:
        """Create an index. Failures are logged, not raised."""
        try:
            await self._call("post_index", db=db, **params)
            logger.info(f"Creating Cloudant index in database {db}", extra={"context": {"index": params}})
        except RemoteCallError as e:
            logger.error(
                f"Failed to create index in database {db}: {e.message}",
                extra={"context": {"index": params}},
            )

    async def create_design_document(self, db: str, payload: dict) -> None:
        try:
            await self._call("put_design_document", db=db, **payload)
            logger.info(f"Created the design view in the database {db}")
        except RemoteCallError as e:
            logger.error(f"Failed to create design view in the database {db}: {e.message}")
            raise

    async def delete_db(self, db: str) -> dict:
        try:
            await self._call("get_database_information", db=db)
            logger.info(f"Deleting Cloudant database {db}")
            return await self._call("delete_database", db=db)
        except RemoteCallError as e:
            logger.error(f"Failed to delete Cloudant database {db}: {e.message}")
            raise

    # -- documents --------------------------------------------------------

    async def get_all_documents_by_view(self, db: str, view_name: str, partition_key: str) -> dict:
        """Query a partitioned view; the design document shares the view's name."""
        logger.debug(f"Getting a list of all documents by view in a database {db}")
        try:
            return await self._call(
                "post_partition_view",
                db=db,
                ddoc=view_name,
                view=view_name,
                partition_key=partition_key,
            )
        except RemoteCallError as e:
            logger.error(f"Failed to getting a list of all documents by view in the database {db}: {e.message}")
            raise

    async def save_pii(self, db: str, pii) -> dict:
        """Store ``pii`` under a server-generated id, which doubles as its de-identified value."""
        generated = await self._call("get_uuids", count=1)
        de_pii = generated["uuids"][0]

        result = await self._call(
            "post_document",
            db=db,
            document={
                "_id": f"{self.config.db_partition_key}:{de_pii}",
                "pii": pii,
                "dePii": de_pii,
            },
        )
        logger.info("PII has been saved successfully", extra={"context": {"result": result}})
        return {"dePii": de_pii, "pii": pii}

    async def find_by_query(self, db: str, selector: dict) -> list[dict]:
        logger.debug("Search for existing PII/PHI")
        result = await self._call(
            "post_partition_find",
            db=db,
            partition_key=self.config.db_partition_key,
            selector=selector,
        )
        return result["docs"]

    async def get_document(self, db: str, doc_id: str) -> dict:
        logger.debug("Retrieve a document")
        try:
            return await self._call("get_document", db=db, doc_id=doc_id)
        except RemoteCallError as e:
            logger.error(f"Failed to retrieve a document in the database {db}: {e.message}")
            raise

    async def create_or_update_bulk(self, db: str, docs: list[dict]) -> None:
        logger.debug(f"Creating or updating a bulk of documents in a database {db}")
        try:
            await self._call("post_bulk_docs", db=db, bulk_docs=BulkDocs(docs=docs))
        except RemoteCallError as e:
            logger.error(f"Failed to create or update bulk in database {db}: {e.message}")
            raise
        logger.info("Cloudant has been updated successfully")
