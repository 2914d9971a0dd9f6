"""
Tests for the integration connection store: token encryption, caching,
soft deletion, webhook bookkeeping and event recording.
"""
import pytest

from crypto_utils import MASK, decrypt_value
from integrations.store import IntegrationStore, _connection_cache, public_view

ORG = "org-1"


def _connection(**overrides):
    row = {
        "id": "int-1",
        "organization_id": ORG,
        "integration_type": "monday",
        "status": "active",
        "credentials": {"api_token": "stored-token", "account_id": "42"},
        "settings": {"webhooks": []},
    }
    row.update(overrides)
    return row


@pytest.fixture
def store(supabase):
    return IntegrationStore(supabase)


def test_public_view_masks_token():
    view = public_view(_connection())
    assert view["credentials"]["api_token"] == MASK
    assert view["credentials"]["account_id"] == "42"


def test_public_view_of_nothing():
    assert public_view(None) is None


@pytest.mark.asyncio
async def test_get_connection_is_cached(store, supabase):
    supabase.respond("integrations", [_connection()])

    first = await store.get_connection(ORG)
    second = await store.get_connection(ORG)

    assert first["id"] == second["id"] == "int-1"
    assert len(supabase.calls_to("integrations")) == 1
    query = supabase.calls_to("integrations")[0]
    assert query.has_filter("status", "active")
    assert query.has_filter("integration_type", "monday")


@pytest.mark.asyncio
async def test_missing_connection_is_cached_too(store, supabase):
    assert await store.get_connection(ORG) is None
    assert await store.get_connection(ORG) is None
    assert len(supabase.calls_to("integrations")) == 1


@pytest.mark.asyncio
async def test_expired_cache_entry_is_dropped(store, supabase):
    _connection_cache[(ORG, "monday")] = {"connection": _connection(id="int-old"), "cached_at": 0}
    supabase.respond("integrations", error=RuntimeError("db down"))

    with pytest.raises(RuntimeError):
        await store.get_connection(ORG)

    assert (ORG, "monday") not in _connection_cache


@pytest.mark.asyncio
async def test_expired_cache_entry_is_refreshed(store, supabase):
    _connection_cache[(ORG, "monday")] = {"connection": _connection(id="int-old"), "cached_at": 0}
    supabase.respond("integrations", [_connection(id="int-new")])

    connection = await store.get_connection(ORG)

    assert connection["id"] == "int-new"
    assert _connection_cache[(ORG, "monday")]["connection"]["id"] == "int-new"
    assert len(supabase.calls_to("integrations")) == 1


@pytest.mark.asyncio
async def test_get_api_token_decrypts(store, supabase):
    await store.save_connection(ORG, "plain-token")
    stored = supabase.calls_to("integrations", "insert")[0].payload["credentials"]["api_token"]
    assert stored != "plain-token"
    assert decrypt_value(stored) == "plain-token"

    supabase.respond("integrations", [_connection(credentials={"api_token": stored})], op="select")
    assert await store.get_api_token(ORG) == "plain-token"


@pytest.mark.asyncio
async def test_get_api_token_without_connection(store, supabase):
    assert await store.get_api_token(ORG) is None


@pytest.mark.asyncio
async def test_save_new_connection(store, supabase):
    supabase.respond("integrations", [], op="select")
    supabase.respond("integrations", [_connection()], op="insert")

    saved = await store.save_connection(
        ORG, "plain-token",
        account={"id": "42", "name": "Acme", "slug": "acme"},
        user={"name": "Ops", "email": "ops@example.com"},
    )

    assert saved["id"] == "int-1"
    payload = supabase.calls_to("integrations", "insert")[0].payload
    assert payload["name"] == "Monday.com - Acme"
    assert payload["status"] == "active"
    assert payload["credentials"]["account_slug"] == "acme"
    assert payload["metadata"]["user_email"] == "ops@example.com"
    assert payload["settings"] == {"sync_enabled": False, "webhook_enabled": False, "webhooks": []}


@pytest.mark.asyncio
async def test_reconnect_updates_existing_row(store, supabase):
    supabase.respond("integrations", [{"id": "int-1", "settings": {}}], op="select")
    supabase.respond("integrations", [_connection()], op="update")

    await store.save_connection(ORG, "new-token")

    update = supabase.calls_to("integrations", "update")[0]
    assert update.has_filter("id", "int-1")
    assert update.payload["status"] == "active"
    assert "settings" not in update.payload
    assert supabase.calls_to("integrations", "insert") == []


@pytest.mark.asyncio
async def test_save_invalidates_cache(store, supabase):
    supabase.respond("integrations", [], op="select")
    assert await store.get_connection(ORG) is None

    supabase.respond("integrations", [], op="select")
    supabase.respond("integrations", [_connection()], op="insert")
    await store.save_connection(ORG, "plain-token")

    supabase.respond("integrations", [_connection()], op="select")
    assert (await store.get_connection(ORG))["id"] == "int-1"


@pytest.mark.asyncio
async def test_remove_connection_is_soft(store, supabase):
    await store.remove_connection(ORG)

    update = supabase.calls_to("integrations", "update")[0]
    assert update.payload["status"] == "inactive"
    assert update.has_filter("organization_id", ORG)
    assert supabase.calls_to("integrations", "delete") == []


@pytest.mark.asyncio
async def test_get_by_id_only_active(store, supabase):
    supabase.respond("integrations", [_connection()])
    connection = await store.get_by_id("int-1")

    assert connection["id"] == "int-1"
    assert supabase.calls_to("integrations")[0].has_filter("status", "active")


@pytest.mark.asyncio
async def test_add_webhook_appends_to_settings(store, supabase):
    connection = _connection(settings={"webhooks": [{"id": "wh-0"}]})

    await store.add_webhook(connection, {"id": "wh-1", "board_id": "55", "event": "create_item"})

    settings = supabase.calls_to("integrations", "update")[0].payload["settings"]
    assert settings["webhook_enabled"] is True
    assert [w["id"] for w in settings["webhooks"]] == ["wh-0", "wh-1"]
    assert "created_at" in settings["webhooks"][1]
    # the caller's row is not mutated
    assert connection["settings"] == {"webhooks": [{"id": "wh-0"}]}


@pytest.mark.asyncio
async def test_record_event(store, supabase):
    supabase.respond("integration_events", [{"id": "evt-1"}], op="insert")

    event = await store.record_event(_connection(), None, {"event": {"pulseId": 1}})

    assert event == {"id": "evt-1"}
    payload = supabase.calls_to("integration_events", "insert")[0].payload
    assert payload["event_type"] == "unknown"
    assert payload["integration_id"] == "int-1"
    assert payload["organization_id"] == ORG
