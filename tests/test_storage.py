"""Tests for ConfigurationStorage."""

import pytest

from deck_sync.models import Action, Button, Configuration, Grid
from deck_sync.storage import CURRENT_CONFIGURATION_KEY, ConfigurationStorage


def make_configuration(config_id="c1", name="Show"):
    return Configuration(
        id=config_id,
        name=name,
        grid=Grid(rows=2, cols=3),
        buttons=[
            Button(
                id="btn-0-1",
                row=0,
                col=1,
                text="Rec",
                color="#e53935",
                action=Action(type="toggle_record"),
            )
        ],
    )


class TestConfigurationStorage:
    """Test ConfigurationStorage SQLite layer."""

    @pytest.mark.asyncio
    async def test_initialize_creates_tables(self, temp_db):
        """Storage should start empty."""
        storage = ConfigurationStorage(temp_db)
        await storage.initialize()

        assert await storage.load_configurations() == []
        assert await storage.get_setting(CURRENT_CONFIGURATION_KEY) is None
        await storage.close()

    @pytest.mark.asyncio
    async def test_round_trip_survives_reopen(self, temp_db):
        """Saved configurations should load back after reopening."""
        storage = ConfigurationStorage(temp_db)
        await storage.initialize()
        await storage.save_configuration(make_configuration())
        await storage.set_setting(CURRENT_CONFIGURATION_KEY, "c1")
        await storage.close()

        reopened = ConfigurationStorage(temp_db)
        await reopened.initialize()
        loaded = await reopened.load_configurations()
        assert loaded == [make_configuration().model_copy(update={"updated_at": loaded[0].updated_at})]
        assert loaded[0].buttons[0].action.type == "toggle_record"
        assert await reopened.get_setting(CURRENT_CONFIGURATION_KEY) == "c1"
        await reopened.close()

    @pytest.mark.asyncio
    async def test_save_is_upsert(self, temp_db):
        """Saving the same id twice should replace, not duplicate."""
        storage = ConfigurationStorage(temp_db)
        await storage.initialize()
        await storage.save_configuration(make_configuration())
        await storage.save_configuration(make_configuration(name="Renamed"))

        loaded = await storage.load_configurations()
        assert len(loaded) == 1
        assert loaded[0].name == "Renamed"
        await storage.close()

    @pytest.mark.asyncio
    async def test_delete(self, temp_db):
        storage = ConfigurationStorage(temp_db)
        await storage.initialize()
        await storage.save_configuration(make_configuration("c1"))
        await storage.save_configuration(make_configuration("c2"))
        await storage.delete_configuration("c1")

        assert [c.id for c in await storage.load_configurations()] == ["c2"]
        await storage.close()

    @pytest.mark.asyncio
    async def test_uninitialized_raises(self):
        storage = ConfigurationStorage(":memory:")
        with pytest.raises(RuntimeError):
            await storage.load_configurations()

    @pytest.mark.asyncio
    async def test_stats(self):
        storage = ConfigurationStorage(":memory:")
        await storage.initialize()
        await storage.save_configuration(make_configuration())

        stats = await storage.get_stats()
        assert stats == {"configurations": 1, "writes": 1}
        await storage.close()
