"""Tests for the runtime agent configuration store."""

import math

import pytest
from pydantic import ValidationError

from app.core.exceptions import ConfigurationError
from app.crud import system_config as config_crud
from app.models.recommendation import RecommendationType
from app.schemas.agent import AgentConfiguration
from app.services.agent_config import (
    KEY_AUTO_EXECUTE_TYPES,
    KEY_AUTONOMOUS_MODE,
    KEY_MAX_RISK,
    AgentConfigStore,
    defaults_from_settings,
)

from conftest import TENANT_ID


@pytest.fixture
def store(session_factory) -> AgentConfigStore:
    return AgentConfigStore(
        session_factory,
        TENANT_ID,
        defaults=AgentConfiguration(
            autonomous_mode=False,
            max_autonomous_risk_level=5,
            approval_required_above_savings=10000,
            auto_execute_types=(RecommendationType.DELETE_UNATTACHED,),
        ),
    )


async def _write_raw(session_factory, key: str, value: str) -> None:
    async with session_factory() as session, session.begin():
        await config_crud.set_config_value(session, TENANT_ID, key, value, updated_by="test")


class TestInitializeDefaults:
    """Test seeding storage."""

    @pytest.mark.asyncio
    async def test_seeds_every_key_once(self, store, session_factory):
        """Test the first call seeds all keys and the second seeds none."""
        first = await store.initialize_defaults()
        second = await store.initialize_defaults()

        assert len(first) == 5
        assert second == []
        async with session_factory() as session:
            values = await config_crud.get_config_values(session, TENANT_ID, "agent.")
        assert values[KEY_AUTONOMOUS_MODE] == "false"
        assert values[KEY_MAX_RISK] == "5"
        assert values[KEY_AUTO_EXECUTE_TYPES] == "delete-unattached"

    @pytest.mark.asyncio
    async def test_existing_values_are_preserved(self, store, session_factory):
        """Test seeding never overwrites an administrator's value."""
        await _write_raw(session_factory, KEY_AUTONOMOUS_MODE, "true")

        seeded = await store.initialize_defaults()

        assert KEY_AUTONOMOUS_MODE not in seeded
        assert (await store.get()).autonomous_mode is True

    def test_defaults_from_settings(self, test_settings):
        """Test environment settings feed the seed values."""
        defaults = defaults_from_settings(test_settings)

        assert defaults.autonomous_mode == test_settings.AGENT_DEFAULT_AUTONOMOUS_MODE
        assert defaults.max_autonomous_risk_level == test_settings.AGENT_DEFAULT_MAX_AUTONOMOUS_RISK_LEVEL


class TestCaching:
    """Test the explicitly invalidated cache."""

    @pytest.mark.asyncio
    async def test_snapshot_is_cached_until_invalidated(self, store, session_factory):
        """Test out-of-band writes are invisible until invalidate()."""
        await store.initialize_defaults()
        before = await store.get()

        await _write_raw(session_factory, KEY_AUTONOMOUS_MODE, "true")
        assert (await store.get()) is before

        store.invalidate()
        assert (await store.get()).autonomous_mode is True

    @pytest.mark.asyncio
    async def test_snapshot_is_immutable(self, store):
        """Test readers cannot mutate the shared snapshot."""
        config = await store.get()

        with pytest.raises(ValidationError):
            config.autonomous_mode = True


class TestUpdate:
    """Test validated writes."""

    @pytest.mark.asyncio
    async def test_update_persists_and_refreshes(self, store, session_factory):
        """Test update returns the new snapshot and a fresh store sees it."""
        await store.initialize_defaults()

        updated = await store.update(
            "admin@example.com",
            autonomous_mode=True,
            max_autonomous_risk_level=3,
            auto_execute_types="delete-unattached, release-address",
        )

        assert updated.autonomous_mode is True
        assert updated.max_autonomous_risk_level == 3
        assert updated.auto_execute_types == (
            RecommendationType.DELETE_UNATTACHED,
            RecommendationType.RELEASE_ADDRESS,
        )
        reloaded = await AgentConfigStore(session_factory, TENANT_ID).get()
        assert reloaded == updated

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "changes",
        [
            {"autonomous_mode": "yes"},
            {"ai_mode": 1},
            {"max_autonomous_risk_level": 11},
            {"max_autonomous_risk_level": -1},
            {"max_autonomous_risk_level": True},
            {"max_autonomous_risk_level": "3"},
            {"approval_required_above_savings": -1},
            {"approval_required_above_savings": math.inf},
            {"approval_required_above_savings": "lots"},
            {"auto_execute_types": ["delete-unattached", "launch-rockets"]},
            {"no_such_field": 1},
        ],
    )
    async def test_invalid_values_are_rejected(self, store, changes):
        """Test invalid updates raise and leave the configuration unchanged."""
        before = await store.get()

        with pytest.raises(ConfigurationError):
            await store.update("admin", **changes)

        assert (await store.get()) == before

    @pytest.mark.asyncio
    async def test_empty_update_is_a_read(self, store):
        """Test an update with no changes returns the current snapshot."""
        assert await store.update("admin") == await store.get()


class TestCorruptStorage:
    """Test reading values written outside the store."""

    @pytest.mark.asyncio
    async def test_unparseable_value_falls_back_to_default(self, store, session_factory):
        """Test a corrupt field reverts to its default without affecting others."""
        await _write_raw(session_factory, KEY_MAX_RISK, "eleven")
        await _write_raw(session_factory, KEY_AUTONOMOUS_MODE, "true")

        config = await store.get()

        assert config.max_autonomous_risk_level == 5
        assert config.autonomous_mode is True

    @pytest.mark.asyncio
    async def test_out_of_range_value_falls_back_to_defaults(self, store, session_factory):
        """Test a stored value failing validation yields the default snapshot."""
        await _write_raw(session_factory, KEY_MAX_RISK, "99")

        assert await store.get() == store.defaults

    @pytest.mark.asyncio
    async def test_unknown_stored_type_is_ignored(self, store, session_factory):
        """Test unknown types in storage are dropped from the allow-list."""
        await _write_raw(session_factory, KEY_AUTO_EXECUTE_TYPES, "delete-unattached,warp-drive")

        config = await store.get()

        assert config.auto_execute_types == (RecommendationType.DELETE_UNATTACHED,)
