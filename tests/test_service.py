"""
End-to-end tests for the service facade.

Real WebDAVClient instances talk to the in-memory server from conftest.py.
"""
import json

import pytest

from cloudmark.config import CloudmarkConfig, WebDavSettings
from cloudmark.service import CloudService, ServiceResponse
from cloudmark.timestamps import encode


@pytest.fixture
def live_store(store, dav_server, sample_data):
    settings = store.read_settings()
    settings.webdav.url = dav_server.base_url
    settings.webdav.username = "alice"
    settings.webdav.password = "secret"
    settings.client.identifier = "LIVE"
    store.write_settings(settings)
    store.write_data(sample_data)
    return store


@pytest.fixture
def service(live_store):
    return CloudService(live_store, CloudmarkConfig())


class TestServiceResponse:
    def test_failure_carries_type(self):
        response = ServiceResponse.failure(ValueError("bad"))
        assert response.to_dict() == {"ok": False, "error": "bad", "error_type": "ValueError"}

    def test_success(self):
        assert ServiceResponse.success([1]).to_dict() == {"ok": True, "value": [1]}


class TestCloudService:
    """Tests for CloudService operations."""

    @pytest.mark.asyncio
    async def test_backup_then_list(self, service, dav_server, sample_data):
        backup = await service.backup("user")
        assert backup.ok
        name = backup.value["name"]
        assert name == f"LIVE_snapshot_user_{encode(sample_data['lastModified'])}.json"
        assert json.loads(dav_server.files[name])["data"]["folders"][0]["name"] == "Development"

        listing = await service.list_snapshots()
        assert listing.ok
        assert [item["name"] for item in listing.value] == [name]

    @pytest.mark.asyncio
    async def test_list_reuses_cached_validation(self, service, dav_server):
        await service.list_snapshots()
        await service.list_snapshots()
        methods = [m for m, _ in dav_server.requests]
        assert methods.count("HEAD") == 1

    @pytest.mark.asyncio
    async def test_list_surfaces_auth_failure(self, service, live_store):
        settings = live_store.read_settings()
        settings.webdav.password = "wrong"
        live_store.write_settings(settings)

        response = await service.list_snapshots()
        assert not response.ok
        assert response.error_type == "AuthError"

    @pytest.mark.asyncio
    async def test_unconfigured_user_backup_fails(self, store, sample_data):
        store.write_data(sample_data)
        response = await CloudService(store).backup("user")
        assert not response.ok
        assert response.error_type == "ConfigError"

    @pytest.mark.asyncio
    async def test_unknown_source(self, service):
        response = await service.backup("nightly")
        assert not response.ok
        assert response.error_type == "ValueError"

    @pytest.mark.asyncio
    async def test_check_remote_and_sync(self, service, live_store, dav_server):
        remote_ts = live_store.read_data()["lastModified"] + 600_000
        remote_name = f"OTHER_snapshot_user_{encode(remote_ts)}.json"
        remote_data = {"folders": [{"name": "Remote", "bookmarks": [{"url": "https://r"}]}]}
        dav_server.add_file(remote_name, json.dumps(
            {"version": 1, "ts": remote_ts, "data": remote_data}).encode("utf-8"))

        check = await service.check_remote()
        assert check.ok
        assert check.value["has_newer_data"] is True
        assert check.value["file"]["name"] == remote_name
        assert check.value["diff_seconds"] == 600

        synced = await service.sync_from(remote_name)
        assert synced.ok
        assert synced.value["status"] == "synced"
        assert synced.value["safety_snapshot"] in dav_server.files
        assert live_store.read_data()["lastModified"] == remote_ts

        # Local data now matches the remote
        again = await service.check_remote()
        assert again.value["has_newer_data"] is False

    @pytest.mark.asyncio
    async def test_sync_missing_file_leaves_data(self, service, live_store, dav_server):
        before = live_store.read_data()
        response = await service.sync_from("OTHER_snapshot_user_1700000000000.json")
        assert not response.ok
        assert response.error_type == "ProtocolError"
        assert live_store.read_data() == before
        assert len([n for n in dav_server.files if "_sync_backup_" in n]) == 1

    @pytest.mark.asyncio
    async def test_restore(self, service, live_store, dav_server):
        dav_server.add_file("snapshot_user_1600000000000.json", json.dumps(
            {"version": 1, "ts": 1600000000000, "data": {"folders": [], "lastModified": 7}}).encode("utf-8"))
        response = await service.restore("snapshot_user_1600000000000.json")
        assert response.ok
        assert live_store.read_data() == {"folders": [], "lastModified": 7}

    @pytest.mark.asyncio
    async def test_test_connection_with_stored_settings(self, service):
        response = await service.test_connection()
        assert response.ok
        assert response.value == {"success": True, "can_write": True}

    @pytest.mark.asyncio
    async def test_test_connection_with_candidate(self, service, dav_server):
        response = await service.test_connection(
            {"url": dav_server.base_url, "username": "alice", "password": "nope"})
        assert not response.ok
        assert response.error_type == "AuthError"

        response = await service.test_connection(
            WebDavSettings(url=dav_server.base_url, username="alice", password="secret"))
        assert response.ok

    @pytest.mark.asyncio
    async def test_relay_mode(self, live_store, dav_server):
        service = CloudService(live_store, CloudmarkConfig(relay_url=dav_server.relay_url))
        backup = await service.backup("user")
        assert backup.ok
        listing = await service.list_snapshots()
        assert [item["name"] for item in listing.value] == [backup.value["name"]]
        assert ("POST", "PROPFIND", dav_server.base_url) in dav_server.relayed
