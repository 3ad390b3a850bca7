"""
Tests for the setup dispatcher, placement callback and app lifecycle events.
"""

import json
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock
from urllib.parse import quote

from thoth.models import Bitrix24ChannelMapping, Bitrix24Integration, utcnow
from thoth.bitrix24.dispatcher import (
    ACTION_ALIASES,
    PLACEMENT_ACK,
    SetupDispatcher,
    UnknownActionError,
    parse_placement_options,
    resolve_action,
)
from thoth.bitrix24.events import REQUIRED_EVENTS
from thoth.bitrix24.retry import RetryPolicy

from conftest import EVENTS_URL, db_returning, make_integration


@pytest.fixture
def dispatcher(mock_db, fake, no_sleep):
    return SetupDispatcher(
        mock_db, transport=fake.transport, sleep=no_sleep, policy=RetryPolicy(max_attempts=2, delay_seconds=1.0)
    )


@pytest.fixture
def known(mock_db, integration):
    db_returning(mock_db, integration)
    return integration


# =============================================================================
# Action routing
# =============================================================================

class TestResolveAction:

    @pytest.mark.parametrize("name,expected", [
        ("activate_line", "activate_line"),
        ("register_connector", "activate_line"),
        ("reconfigure_connector", "auto_setup"),
        ("diagnose_connector", "diagnose"),
        ("clean_connectors", "clean_duplicate_connectors"),
        ("verify_integration", "check_status"),
        ("force_reinstall_events", "rebind_events"),
        ("  Force_Activate ", "force_activate"),
    ])
    def test_aliases(self, name, expected):
        assert resolve_action(name) == expected

    @pytest.mark.parametrize("name", [None, "", "drop_tables"])
    def test_unknown(self, name):
        assert resolve_action(name) is None

    def test_every_action_has_a_handler(self, dispatcher):
        assert set(ACTION_ALIASES) == set(dispatcher._handlers)

    @pytest.mark.asyncio
    async def test_dispatch_unknown_raises(self, dispatcher):
        with pytest.raises(UnknownActionError):
            await dispatcher.dispatch("drop_tables", {})


class TestDispatchEnvelope:

    @pytest.mark.asyncio
    async def test_missing_integration(self, dispatcher):
        result = await dispatcher.dispatch("diagnose", {"member_id": "nobody"})
        assert result.success is False
        assert result.details["error"] == "integration_not_found"

    @pytest.mark.asyncio
    async def test_missing_credentials_carry_hint(self, dispatcher, mock_db):
        db_returning(mock_db, make_integration(access_token=None, refresh_token=None))

        result = await dispatcher.dispatch("check_status", {"member_id": "member-1"})

        assert result.success is False
        assert result.details["hint"] == "reinstall may be required"

    @pytest.mark.asyncio
    async def test_transport_failure_is_indeterminate(self, dispatcher, known, fake):
        fake.failures["event.get"] = "timeout"

        result = await dispatcher.dispatch("list_bound_events", {"member_id": "member-1"})

        assert result.success is False
        assert result.details["error"] == "transport"
        assert "unknown" in result.message

    @pytest.mark.asyncio
    async def test_activate_line(self, dispatcher, known, fake):
        result = await dispatcher.dispatch("register", {"member_id": "member-1", "line_id": "2"})

        assert result.success
        assert result.details["line_id"] == 2
        assert ("thoth_whatsapp", 2) in fake.active

    @pytest.mark.asyncio
    async def test_auto_setup(self, dispatcher, known, fake):
        result = await dispatcher.dispatch("auto_setup", {"member_id": "member-1"})
        assert result.success
        assert result.details["lines_accepted"] == [1]
        assert known.auto_setup_completed

    @pytest.mark.asyncio
    async def test_diagnose_with_auto_fix(self, dispatcher, known, fake):
        fake.register()
        fake.bind_required_events()

        result = await dispatcher.dispatch("diagnose_connector", {"member_id": "member-1", "auto_fix": "Y"})

        assert result.success
        assert result.details["issues"] == ["not active"]
        assert result.details["fixes_applied"] == ["activated line 1"]

    @pytest.mark.asyncio
    async def test_check_status(self, dispatcher, known, fake):
        fake.register()
        fake.activate(1)

        result = await dispatcher.dispatch("check_connector_status", {"member_id": "member-1"})

        assert result.success is False
        assert result.details["active"] is True
        assert result.details["events_bound"] == 0
        assert fake.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_refresh_token(self, dispatcher, known, fake):
        result = await dispatcher.dispatch("refresh_token", {"member_id": "member-1"})
        assert result.success
        assert fake.oauth_calls == 1
        assert known.access_token == "access-new"

    @pytest.mark.asyncio
    async def test_refresh_token_rejected(self, dispatcher, known, fake):
        fake.oauth_status = 400
        fake.oauth_body = {"error": "invalid_grant"}

        result = await dispatcher.dispatch("refresh_token", {"member_id": "member-1"})

        assert result.success is False
        assert "reinstall may be required" in result.message
        assert known.access_token == "access-1"

    @pytest.mark.asyncio
    async def test_list_bound_events_marks_ownership(self, dispatcher, known, fake):
        fake.seed_event("OnImConnectorMessageAdd", EVENTS_URL)
        fake.seed_event("OnImConnectorMessageAdd", "https://elsewhere.example/hook")

        result = await dispatcher.dispatch("list_bound_events", {"member_id": "member-1"})

        owned = {e["handler"]: e["owned"] for e in result.details["events"]}
        assert owned == {EVENTS_URL: True, "https://elsewhere.example/hook": False}

    @pytest.mark.asyncio
    async def test_cleanup_duplicate_events(self, dispatcher, known, fake):
        fake.seed_event("OnImConnectorMessageAdd", EVENTS_URL)
        fake.seed_event("OnImConnectorMessageAdd", EVENTS_URL)

        result = await dispatcher.dispatch("cleanup_duplicate_events", {"member_id": "member-1"})

        assert result.success
        assert fake.handlers_for("OnImConnectorMessageAdd") == [EVENTS_URL]

    @pytest.mark.asyncio
    async def test_rebind_events_updates_connector_data(self, dispatcher, known, fake):
        fake.bind_required_events("http://localhost:8000/old/events")
        new_url = "http://localhost:8000/api/bitrix24/events"

        result = await dispatcher.dispatch("force_reinstall_events", {"member_id": "member-1", "new_url": new_url})

        assert result.success
        for event in REQUIRED_EVENTS:
            assert fake.handlers_for(event) == [new_url]
        assert fake.connector_data[("thoth_whatsapp", 1)]["url"] == new_url
        assert known.settings["events_url"] == new_url

    @pytest.mark.asyncio
    async def test_rebound_url_is_kept_by_later_repairs(self, dispatcher, known, fake):
        fake.register()
        fake.activate(1)
        fake.bind_required_events()
        new_url = "http://localhost:8000/api/v2/bitrix24/events"
        identity = {"member_id": "member-1"}

        rebound = await dispatcher.dispatch("rebind_events", {**identity, "new_url": new_url})
        status = await dispatcher.dispatch("check_status", identity)
        first = await dispatcher.dispatch("diagnose", {**identity, "auto_fix": True})
        second = await dispatcher.dispatch("diagnose", {**identity, "auto_fix": True})

        assert rebound.success
        assert status.success
        assert status.details["missing_events"] == []
        for result in (first, second):
            assert result.success
            assert result.details["fixes_applied"] == []
            assert result.details["cleanup_actions"] == []
        for event in REQUIRED_EVENTS:
            assert fake.handlers_for(event) == [new_url]

    @pytest.mark.asyncio
    async def test_check_status_unreachable_is_unknown(self, dispatcher, known, fake):
        fake.register()
        fake.bind_required_events()
        fake.failures["imconnector.status"] = "timeout"

        result = await dispatcher.dispatch("check_status", {"member_id": "member-1"})

        assert result.success is False
        assert "unknown" in result.message
        assert result.details["active"] is None
        assert "not active" not in result.details["issues"]

    @pytest.mark.asyncio
    async def test_rebind_placements(self, dispatcher, known, fake):
        result = await dispatcher.dispatch("rebind_placements", {"member_id": "member-1"})

        assert result.success
        assert [p[0] for p in fake.placements] == ["SETTING_CONNECTOR", "REST_APP"]
        assert fake.count("placement.unbind") == 2

    @pytest.mark.asyncio
    async def test_force_activate(self, dispatcher, known, fake):
        fake.register()
        fake.activate(1)

        result = await dispatcher.dispatch("force_activate", {"member_id": "member-1"})

        assert result.success
        assert result.details["already_active"] is False


# =============================================================================
# Placement callback
# =============================================================================

class TestPlacement:

    def test_parse_options_variants(self):
        options = {"LINE": 2, "ACTIVE_STATUS": 1}
        assert parse_placement_options(options) == options
        assert parse_placement_options(json.dumps(options)) == options
        assert parse_placement_options(quote(json.dumps(options))) == options
        assert parse_placement_options("not json") == {}
        assert parse_placement_options(None) == {}

    @pytest.mark.asyncio
    async def test_unknown_portal_still_acknowledged(self, dispatcher, fake):
        ack = await dispatcher.handle_placement({
            "PLACEMENT": "SETTING_CONNECTOR",
            "PLACEMENT_OPTIONS": json.dumps({"LINE": 1, "ACTIVE_STATUS": 1}),
            "DOMAIN": "unknown.bitrix24.com",
        })
        assert ack == PLACEMENT_ACK
        assert fake.calls == []

    @pytest.mark.asyncio
    async def test_internal_error_still_acknowledged(self, dispatcher, mock_db):
        mock_db.execute = AsyncMock(side_effect=RuntimeError("database down"))
        ack = await dispatcher.handle_placement({"PLACEMENT": "SETTING_CONNECTOR", "member_id": "m"})
        assert ack == PLACEMENT_ACK

    @pytest.mark.asyncio
    async def test_activates_requested_line(self, dispatcher, known, fake):
        ack = await dispatcher.handle_placement({
            "PLACEMENT": "SETTING_CONNECTOR",
            "PLACEMENT_OPTIONS": quote(json.dumps({"LINE": "4", "ACTIVE_STATUS": "1", "CONNECTOR": "thoth_whatsapp"})),
            "auth": {"member_id": "member-1", "domain": "example.bitrix24.com"},
        })

        assert ack == PLACEMENT_ACK
        assert ("thoth_whatsapp", 4) in fake.active
        assert known.channel_mappings[0].line_id == 4

    @pytest.mark.asyncio
    async def test_defaults_to_line_one(self, dispatcher, known, fake):
        await dispatcher.handle_placement({"PLACEMENT": "SETTING_CONNECTOR", "member_id": "member-1"})
        assert ("thoth_whatsapp", 1) in fake.active

    @pytest.mark.asyncio
    async def test_active_status_zero_deactivates(self, dispatcher, known, fake):
        fake.register()
        fake.activate(1)
        known.channel_mappings.append(Bitrix24ChannelMapping(integration_id=known.id, line_id=1, is_active=True))

        ack = await dispatcher.handle_placement({
            "PLACEMENT": "SETTING_CONNECTOR",
            "PLACEMENT_OPTIONS": {"LINE": 1, "ACTIVE_STATUS": 0},
            "member_id": "member-1",
        })

        assert ack == PLACEMENT_ACK
        assert ("thoth_whatsapp", 1) not in fake.active
        assert known.channel_mappings[0].is_active is False

    @pytest.mark.asyncio
    async def test_foreign_connector_ignored(self, dispatcher, known, fake):
        ack = await dispatcher.handle_placement({
            "PLACEMENT": "SETTING_CONNECTOR",
            "PLACEMENT_OPTIONS": {"LINE": 1, "ACTIVE_STATUS": 1, "CONNECTOR": "whatsappbytwilio"},
            "member_id": "member-1",
        })
        assert ack == PLACEMENT_ACK
        assert fake.count("imconnector.activate") == 0


# =============================================================================
# App lifecycle
# =============================================================================

class TestInstallEvents:

    @pytest.mark.asyncio
    async def test_install_creates_integration(self, dispatcher, mock_db, fake):
        result = await dispatcher.handle_install_event({
            "event": "ONAPPINSTALL",
            "auth": {
                "access_token": "access-install",
                "refresh_token": "refresh-install",
                "expires_in": "3600",
                "member_id": "member-9",
                "domain": "newportal.bitrix24.com",
                "application_token": "app-token",
            },
        })

        assert result.success
        created = mock_db.add.call_args[0][0]
        assert isinstance(created, Bitrix24Integration)
        assert created.client_endpoint == "https://newportal.bitrix24.com/rest/"
        assert created.access_token == "access-install"
        assert created.events_bound is True
        assert fake.placements == [["SETTING_CONNECTOR", "http://localhost:8000/api/bitrix24/placement"]]
        assert fake.count("event.bind") == len(REQUIRED_EVENTS)

    @pytest.mark.asyncio
    async def test_reinstall_revives_existing(self, dispatcher, mock_db, fake):
        existing = make_integration(is_active=False, uninstalled_at=utcnow() - timedelta(days=1))
        db_returning(mock_db, existing)

        result = await dispatcher.handle_install_event({
            "event": "ONAPPINSTALL",
            "auth": {"access_token": "a2", "member_id": "member-1", "domain": "example.bitrix24.com"},
        })

        assert result.success
        assert existing.is_active is True
        assert existing.uninstalled_at is None
        assert existing.refresh_token == "refresh-1"
        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_uninstall_soft_deactivates(self, dispatcher, mock_db):
        existing = make_integration(application_token="app-token")
        db_returning(mock_db, existing)

        result = await dispatcher.handle_install_event({
            "event": "ONAPPUNINSTALL",
            "auth": {"member_id": "member-1", "application_token": "app-token"},
        })

        assert result.success
        assert existing.is_active is False
        assert existing.uninstalled_at is not None
        assert existing.access_token == "access-1"

    @pytest.mark.asyncio
    async def test_uninstall_with_wrong_application_token(self, dispatcher, mock_db):
        existing = make_integration(application_token="app-token")
        db_returning(mock_db, existing)

        result = await dispatcher.handle_install_event({
            "event": "ONAPPUNINSTALL",
            "auth": {"member_id": "member-1", "application_token": "forged"},
        })

        assert result.success is False
        assert existing.is_active is True

    @pytest.mark.asyncio
    async def test_app_test_event(self, dispatcher):
        result = await dispatcher.handle_install_event({"event": "ONAPPTEST"})
        assert result.success

    @pytest.mark.asyncio
    async def test_connector_removed_from_line(self, dispatcher, known):
        known.channel_mappings.append(Bitrix24ChannelMapping(integration_id=known.id, line_id=2, is_active=True))

        result = await dispatcher.handle_connector_event({
            "event": "ONIMCONNECTORSTATUSDELETE",
            "data": {"CONNECTOR": "thoth_whatsapp", "LINE": "2"},
            "auth": {"member_id": "member-1"},
        })

        assert result.details["lines_deactivated"] == [2]
        assert known.channel_mappings[0].is_active is False
