"""Tests for cloud_helpers/appid/provisioning.py — ensure-user workflow."""

from unittest.mock import AsyncMock

import pytest

from cloud_helpers.appid.client import AppIDService
from cloud_helpers.appid.provisioning import ProvisioningResult, ProvisioningState, UserProvisioner
from cloud_helpers.errors import ConfigurationError, RemoteError
from tests.conftest import FakeAppID

FULL_SEQUENCE = [
    "login",
    "list-roles",
    "create-account",
    "login",
    "list-users",
    "update-roles",
    "update-attributes",
]


def provisioner_for(fake: FakeAppID, config, token_provider) -> UserProvisioner:
    return UserProvisioner(AppIDService(config, token_provider, transport=fake.transport()))


class TestExistingUser:

    async def test_login_success_changes_nothing(self, appid_config, token_provider):
        fake = FakeAppID(users={"a@b.com": "pw"})
        result = await provisioner_for(fake, appid_config, token_provider).ensure_user("a@b.com", "pw")

        assert result.ok
        assert result.existing
        assert result.state is ProvisioningState.NOT_STARTED
        assert fake.calls == ["login"]
        token_provider.assert_not_awaited()

    async def test_second_run_is_a_no_op(self, appid_config, token_provider):
        fake = FakeAppID()
        provisioner = provisioner_for(fake, appid_config, token_provider)

        first = await provisioner.ensure_user("a@b.com", "pw")
        assert first.ok and not first.existing

        fake.calls.clear()
        second = await provisioner.ensure_user("a@b.com", "pw")
        assert second.existing
        assert fake.calls == ["login"]
        assert fake.mutations() == []


class TestNewUser:

    async def test_full_sequence_in_order(self, appid_config, token_provider):
        fake = FakeAppID()
        result = await provisioner_for(fake, appid_config, token_provider).ensure_user("a@b.com", "pw")

        assert fake.calls == FULL_SEQUENCE
        assert result.ok
        assert result.state is ProvisioningState.ATTRIBUTES_SET
        assert result.user_id == "id-a@b.com"
        assert fake.assigned_roles["id-a@b.com"] == ["role-a", "role-b"]
        assert fake.attributes["id-a@b.com"] == {"TenantID": "user-tenant"}
        token_provider.assert_awaited_once_with("appid-apikey")

    @pytest.mark.parametrize("failing_step,expected_state", [
        ("list-roles", ProvisioningState.NOT_STARTED),
        ("create-account", ProvisioningState.NOT_STARTED),
        ("list-users", ProvisioningState.ACCOUNT_CREATED),
        ("update-roles", ProvisioningState.ACCOUNT_CREATED),
        ("update-attributes", ProvisioningState.ROLES_ASSIGNED),
    ])
    async def test_failure_stops_sequence(self, appid_config, token_provider, failing_step, expected_state):
        fake = FakeAppID()
        fake.fail.add(failing_step)
        result = await provisioner_for(fake, appid_config, token_provider).ensure_user("a@b.com", "pw")

        assert not result.ok
        assert isinstance(result.error, RemoteError)
        assert result.error.status == 400
        assert result.state is expected_state
        # nothing after the failing step was attempted
        assert fake.calls == FULL_SEQUENCE[:FULL_SEQUENCE.index(failing_step) + 1]

    async def test_partial_failure_is_not_rolled_back(self, appid_config, token_provider):
        fake = FakeAppID()
        fake.fail.add("update-roles")
        await provisioner_for(fake, appid_config, token_provider).ensure_user("a@b.com", "pw")

        assert "a@b.com" in fake.users
        assert "id-a@b.com" not in fake.assigned_roles

    async def test_token_failure_is_reported(self, appid_config):
        fake = FakeAppID()
        failing_provider = AsyncMock(side_effect=RemoteError(400, "Bad Request", "invalid apikey"))
        result = await provisioner_for(fake, appid_config, failing_provider).ensure_user("a@b.com", "pw")

        assert result.error.message == "invalid apikey"
        assert fake.mutations() == []


class TestResume:

    async def test_resume_continues_after_last_completed_step(self, appid_config, token_provider):
        fake = FakeAppID()
        fake.fail.add("update-roles")
        provisioner = provisioner_for(fake, appid_config, token_provider)
        failed = await provisioner.ensure_user("a@b.com", "pw")
        assert failed.state is ProvisioningState.ACCOUNT_CREATED

        fake.fail.clear()
        fake.calls.clear()
        result = await provisioner.ensure_user("a@b.com", "pw", resume=failed)

        assert result.ok
        assert result.error is None
        assert result.state is ProvisioningState.ATTRIBUTES_SET
        assert fake.calls == ["list-roles", "update-roles", "update-attributes"]

    async def test_resume_looks_up_missing_user_id(self, appid_config, token_provider):
        fake = FakeAppID(users={"a@b.com": "pw"})
        resume = ProvisioningResult("a@b.com", state=ProvisioningState.ACCOUNT_CREATED)
        result = await provisioner_for(fake, appid_config, token_provider).ensure_user(
            "a@b.com", "pw", resume=resume
        )
        assert result.ok
        assert fake.calls == ["list-roles", "login", "list-users", "update-roles", "update-attributes"]

    async def test_resume_when_complete_does_nothing(self, appid_config, token_provider):
        fake = FakeAppID()
        done = ProvisioningResult("a@b.com", state=ProvisioningState.ATTRIBUTES_SET, user_id="id-a@b.com")
        result = await provisioner_for(fake, appid_config, token_provider).ensure_user(
            "a@b.com", "pw", resume=done
        )
        assert result.ok
        assert fake.calls == []


    async def test_resume_for_other_user_is_rejected(self, appid_config, token_provider):
        fake = FakeAppID()
        other = ProvisioningResult("other@b.com", state=ProvisioningState.ACCOUNT_CREATED)
        with pytest.raises(ValueError, match="other@b.com"):
            await provisioner_for(fake, appid_config, token_provider).ensure_user(
                "a@b.com", "pw", resume=other
            )
        assert fake.calls == []


class TestMalformedResponses:

    async def test_roles_without_ids(self, appid_config, token_provider):
        fake = FakeAppID()
        fake.replies["list-roles"] = {"json": {"roles": [{"name": "no-id"}]}}
        result = await provisioner_for(fake, appid_config, token_provider).ensure_user("a@b.com", "pw")

        assert not result.ok
        assert result.error.reason == "InvalidBody"
        assert result.state is ProvisioningState.NOT_STARTED
        assert fake.mutations() == []

    async def test_user_list_not_json(self, appid_config, token_provider):
        fake = FakeAppID()
        fake.replies["list-users"] = {"text": "<html>maintenance</html>"}
        result = await provisioner_for(fake, appid_config, token_provider).ensure_user("a@b.com", "pw")

        assert result.error.reason == "InvalidBody"
        assert result.state is ProvisioningState.ACCOUNT_CREATED
        assert "update-roles" not in fake.calls

    async def test_user_list_with_bad_entries(self, appid_config, token_provider):
        fake = FakeAppID()
        fake.replies["list-users"] = {"json": {"users": ["a@b.com"]}}
        result = await provisioner_for(fake, appid_config, token_provider).ensure_user("a@b.com", "pw")

        assert result.error.reason == "InvalidBody"


class TestConfiguration:

    async def test_missing_apikey_raises_before_management_calls(self, appid_config, token_provider):
        fake = FakeAppID()
        config = appid_config.model_copy(update={"apikey": ""})
        with pytest.raises(ConfigurationError, match="APP_ID_APIKEY"):
            await provisioner_for(fake, config, token_provider).ensure_user("a@b.com", "pw")
        assert fake.calls == ["login"]
        token_provider.assert_not_awaited()

    async def test_existing_user_needs_no_management_apikey(self, appid_config, token_provider):
        fake = FakeAppID(users={"a@b.com": "pw"})
        config = appid_config.model_copy(update={"apikey": ""})
        result = await provisioner_for(fake, config, token_provider).ensure_user("a@b.com", "pw")

        assert result.ok
        assert result.existing

    async def test_missing_client_config_raises_before_login(self, appid_config, token_provider):
        fake = FakeAppID(users={"a@b.com": "pw"})
        config = appid_config.model_copy(update={"secret": ""})
        with pytest.raises(ConfigurationError, match="APP_ID_SECRET"):
            await provisioner_for(fake, config, token_provider).ensure_user("a@b.com", "pw")
        assert fake.calls == []
