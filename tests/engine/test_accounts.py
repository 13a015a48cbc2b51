"""Tests for account registration, selection and removal."""

import asyncio
from unittest.mock import patch

import pytest

from cftunnel.common.exceptions import (
    AccountNotFoundError,
    NotInitializedError,
    UnauthorizedError,
    ValidationError,
)
from cftunnel.engine.operations import OperationEngine
from cftunnel.state.store import StateStore

API_TOKEN = "good-token"


@pytest.fixture
def fresh_engine(paths, adapter, registry_factory):
    """Engine over an empty config directory."""
    return OperationEngine(StateStore(paths), adapter, registry_factory, paths)


class TestRegisterAccount:
    """Test `init`."""

    def test_first_account(self, fresh_engine, paths):
        account = asyncio.run(fresh_engine.register_account(API_TOKEN))

        assert account.name == "default"
        assert account.account_id == "acct-1"
        assert [z.name for z in account.zones] == ["example.com", "example.org"]
        assert account.default_zone_id == "zone-1"
        assert fresh_engine.snapshot().default_account == "default"
        assert paths.daemon_configs_dir.is_dir()

    def test_rejected_token_saves_nothing(self, fresh_engine):
        with pytest.raises(UnauthorizedError):
            asyncio.run(fresh_engine.register_account("bad-token"))

        with pytest.raises(NotInitializedError):
            fresh_engine.snapshot()

    def test_second_account_becomes_default(self, engine):
        asyncio.run(engine.register_account(API_TOKEN, name="work", display_name="Work"))

        snapshot = engine.snapshot()
        assert [a.name for a in snapshot.accounts] == ["default", "work"]
        assert snapshot.default_account == "work"

    def test_reregister_keeps_default_zone(self, engine):
        engine.set_default_zone("example.org")

        account = asyncio.run(engine.register_account(API_TOKEN))

        assert account.default_zone_id == "zone-2"

    def test_token_is_logged_masked(self, fresh_engine):
        with patch("cftunnel.engine.operations.logger") as logger:
            asyncio.run(fresh_engine.register_account(API_TOKEN))

        logger.info.assert_any_call(
            "Account registered", account="default", zones=2, api_token="******oken"
        )


class TestAccountSelection:
    """Test selecting accounts and zones."""

    def test_select_account(self, engine):
        asyncio.run(engine.register_account(API_TOKEN, name="work"))

        engine.select_account("default")

        assert engine.snapshot().account().name == "default"

    def test_select_unknown_account(self, engine):
        with pytest.raises(AccountNotFoundError):
            engine.select_account("nope")

    def test_refresh_zones_drops_vanished_default(self, engine, cloudflare):
        engine.set_default_zone("example.org")
        cloudflare.zones = [z for z in cloudflare.zones if z["id"] != "zone-2"]

        account = asyncio.run(engine.refresh_zones())

        assert [z.name for z in account.zones] == ["example.com"]
        assert account.default_zone_id == "zone-1"


class TestPurgeAndReset:
    """Test removing accounts and resetting everything."""

    def test_cannot_remove_only_account(self, engine):
        with pytest.raises(ValidationError, match="cftunnel reset"):
            asyncio.run(engine.purge_account("default"))

    def test_purge_deletes_account_tunnels(self, engine, cloudflare):
        asyncio.run(engine.register_account(API_TOKEN, name="work"))
        asyncio.run(engine.add("myapp", "localhost:3000", account="work"))

        reports = asyncio.run(engine.purge_account("work"))

        assert [r.tunnel for r in reports] == ["myapp"]
        assert all(r.ok for r in reports)
        assert cloudflare.tunnels == {}
        snapshot = engine.snapshot()
        assert [a.name for a in snapshot.accounts] == ["default"]
        assert snapshot.default_account == "default"
        assert snapshot.tunnels == ()

    def test_reset_removes_remote_and_local_state(self, engine, cloudflare, paths):
        asyncio.run(engine.add("myapp", "localhost:3000", start=True))

        reports = asyncio.run(engine.reset_all())

        assert len(reports) == 1 and reports[0].ok
        assert cloudflare.tunnels == {}
        assert not paths.config_file.exists()
        with pytest.raises(NotInitializedError):
            engine.snapshot()

    def test_reset_with_corrupt_store(self, engine, paths, cloudflare):
        paths.config_file.write_text("this is [not toml")

        assert asyncio.run(engine.reset_all()) == []
        assert not paths.config_file.exists()
        assert cloudflare.requests == []
