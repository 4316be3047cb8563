"""Make sure an App ID user exists and is fully provisioned.

A successful login means the user is already there and nothing is changed.
Otherwise the user is created, activated, given every role and tagged with
the tenant id, in that order. A failure stops the sequence without undoing
earlier steps; the returned result records how far it got and can be passed
back as ``resume`` to continue from there.

A failed login is taken to mean the user does not exist. App ID answers a
wrong password and an unknown user the same way, so the two cannot be told
apart here; the login error's status is logged with the warning.
"""

from dataclasses import dataclass, replace
from enum import IntEnum

from cloud_helpers.appid.client import AppIDService
from cloud_helpers.errors import RemoteCallError
from cloud_helpers.logging.json_log import get_logger

logger = get_logger("appid.provisioning")


class ProvisioningState(IntEnum):
    NOT_STARTED = 0
    ACCOUNT_CREATED = 1
    ROLES_ASSIGNED = 2
    ATTRIBUTES_SET = 3


@dataclass
class ProvisioningResult:
    username: str
    state: ProvisioningState = ProvisioningState.NOT_STARTED
    existing: bool = False  # login succeeded, nothing was changed
    user_id: str | None = None
    error: RemoteCallError | None = None

    @property
    def ok(self) -> bool:
        if self.error is not None:
            return False
        return self.existing or self.state is ProvisioningState.ATTRIBUTES_SET


class UserProvisioner:
    def __init__(self, service: AppIDService):
        self.service = service

    async def ensure_user(
        self,
        username: str,
        password: str,
        resume: ProvisioningResult | None = None,
    ) -> ProvisioningResult:
        """Provision ``username`` unless it can already log in.

        Never raises for remote failures; check ``result.ok`` /
        ``result.error``. Missing configuration raises ConfigurationError;
        the management API key is only needed once provisioning starts.
        """
        self.service.config.check_required()

        if resume is None:
            result = ProvisioningResult(username)
        elif resume.username != username:
            raise ValueError(f"Cannot resume provisioning of {resume.username} as {username}")
        else:
            result = replace(resume, error=None)

        if result.state is ProvisioningState.NOT_STARTED:
            logger.debug("Exist user check starting")
            try:
                await self.service.login(username, password)
            except RemoteCallError as e:
                logger.warning(
                    "Login failed, creating new user",
                    extra={"context": {"username": username, "status": e.status, "reason": e.reason}},
                )
            else:
                result.existing = True
                logger.info("Login was successful!")
                return result

        self.service.config.check_management()
        try:
            await self._provision(result, password)
        except RemoteCallError as e:
            result.error = e
            logger.error(
                f"Login was not successful! {e}",
                extra={"context": {"username": username, "state": result.state.name}},
            )
            return result

        logger.info("Login was successful!")
        return result

    async def _provision(self, result: ProvisioningResult, password: str) -> None:
        if result.state is ProvisioningState.ATTRIBUTES_SET:
            return
        service = self.service
        async with await service.management_client() as client:
            role_ids: list[str] = []
            if result.state < ProvisioningState.ROLES_ASSIGNED:
                role_ids = await service.get_all_role_ids(client)

            if result.state < ProvisioningState.ACCOUNT_CREATED:
                await service.create_user(client, result.username, password)
                result.state = ProvisioningState.ACCOUNT_CREATED

            if result.user_id is None:
                result.user_id = await service.find_user_id(client, result.username, password)

            if result.state < ProvisioningState.ROLES_ASSIGNED:
                await service.update_user_roles(client, result.user_id, role_ids)
                result.state = ProvisioningState.ROLES_ASSIGNED

            if result.state < ProvisioningState.ATTRIBUTES_SET:
                await service.update_user_attributes(client, result.user_id)
                result.state = ProvisioningState.ATTRIBUTES_SET
