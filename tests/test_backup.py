"""
Tests for the backup orchestrator.

Uses the in-memory FakeRemote from conftest.py as transport.
"""
from datetime import datetime

import pytest

from cloudmark.backup import (
    BackupOrchestrator,
    BackupReason,
    build_payload,
    sanitize_dataset,
)
from cloudmark.errors import AuthError, ConfigError, ProtocolError
from cloudmark.timestamps import encode, timestamp_from_filename


class TestBackupReason:
    def test_prefixes(self):
        assert BackupReason.SCHEDULED.prefix == "snapshot_schedule"
        assert BackupReason.USER.prefix == "snapshot_user"
        assert BackupReason.MUTATION.prefix == "snapshot_handle"
        assert BackupReason.PRE_SYNC_SAFETY.prefix == "sync_backup"

    @pytest.mark.parametrize("raw,expected", [
        ("user", BackupReason.USER),
        ("mutation-triggered", BackupReason.MUTATION),
        ("alarm", BackupReason.SCHEDULED),
        ("manual", BackupReason.USER),
        ("auto", BackupReason.MUTATION),
        ("sync_backup", BackupReason.PRE_SYNC_SAFETY),
        (BackupReason.SCHEDULED, BackupReason.SCHEDULED),
    ])
    def test_parse(self, raw, expected):
        assert BackupReason.parse(raw) is expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            BackupReason.parse("nightly")


class TestSanitize:
    """Tests for sanitize_dataset() and build_payload()."""

    def test_strips_local_only_fields_and_icons(self, sample_data):
        clean = sanitize_dataset(sample_data)
        assert "settings" not in clean
        assert "history" not in clean
        top = clean["folders"][0]
        assert all("iconDataUrl" not in b for b in top["bookmarks"])
        assert "iconDataUrl" not in top["children"][0]["bookmarks"][0]
        assert top["bookmarks"][0]["url"] == "https://docs.python.org"

    def test_input_is_untouched(self, sample_data):
        sanitize_dataset(sample_data)
        assert sample_data["settings"] == {"theme": "dark"}
        assert "iconDataUrl" in sample_data["folders"][0]["bookmarks"][0]

    def test_payload_envelope(self, sample_data):
        payload = build_payload(sample_data, 123)
        assert payload["version"] == 1
        assert payload["ts"] == 123
        assert "history" not in payload["data"]


class TestBackup:
    """Tests for BackupOrchestrator.backup()."""

    @pytest.mark.asyncio
    async def test_user_backup_uploads(self, configured_store, remote, sample_data):
        orchestrator = BackupOrchestrator(configured_store, remote.factory)
        result = await orchestrator.backup("user")

        expected = f"TESTCLIENT_snapshot_user_{encode(sample_data['lastModified'])}.json"
        assert result.uploaded
        assert result.name == expected
        assert timestamp_from_filename(result.name) == sample_data["lastModified"]
        assert remote.files[expected]["ts"] == sample_data["lastModified"]
        assert "settings" not in remote.files[expected]["data"]

    @pytest.mark.asyncio
    async def test_missing_last_modified_uses_now(self, configured_store, remote, sample_data):
        del sample_data["lastModified"]
        configured_store.write_data(sample_data)
        before = int(datetime.now().timestamp()) * 1000

        result = await BackupOrchestrator(configured_store, remote.factory).backup("user")

        assert timestamp_from_filename(result.name) >= before

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason", ["scheduled", "mutation-triggered"])
    async def test_background_backup_skips_when_unconfigured(self, store, remote, sample_data, reason):
        store.write_data(sample_data)
        result = await BackupOrchestrator(store, remote.factory).backup(reason)
        assert not result.uploaded
        assert result.skipped == "not_configured"
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_user_backup_fails_when_unconfigured(self, store, remote, sample_data):
        store.write_data(sample_data)
        notes = []
        orchestrator = BackupOrchestrator(store, remote.factory, notifier=lambda t, m: notes.append(t))
        with pytest.raises(ConfigError):
            await orchestrator.backup("user")
        assert notes == ["cloudmark backup failed"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason", ["user", "scheduled", "mutation-triggered"])
    async def test_empty_dataset_is_never_uploaded(self, configured_store, remote, reason):
        configured_store.write_data({"folders": [{"name": "Empty", "bookmarks": []}]})
        result = await BackupOrchestrator(configured_store, remote.factory).backup(reason)
        assert result.skipped == "empty"
        assert remote.files == {}

    @pytest.mark.asyncio
    async def test_safety_backup_uploads_empty_dataset(self, configured_store, remote):
        configured_store.write_data({"folders": []})
        result = await BackupOrchestrator(configured_store, remote.factory).backup("pre-sync-safety")
        assert result.uploaded
        assert result.name.startswith("TESTCLIENT_sync_backup_")

    @pytest.mark.asyncio
    async def test_notifications(self, configured_store, remote):
        notes = []
        orchestrator = BackupOrchestrator(configured_store, remote.factory,
                                          notifier=lambda title, message: notes.append((title, message)))
        await orchestrator.backup("user")
        await orchestrator.backup("pre-sync-safety")
        assert notes == [("cloudmark backup succeeded", "Manual backup complete")]

    @pytest.mark.asyncio
    async def test_safety_failure_is_not_notified(self, configured_store, remote):
        remote.fail_upload = ProtocolError("Upload failed: 507", 507)
        notes = []
        orchestrator = BackupOrchestrator(configured_store, remote.factory,
                                          notifier=lambda t, m: notes.append(t))
        with pytest.raises(ProtocolError):
            await orchestrator.backup("pre-sync-safety")
        assert notes == []

    @pytest.mark.asyncio
    async def test_upload_failure_propagates(self, configured_store, remote):
        remote.fail_upload = AuthError("Upload failed: 401", 401)
        with pytest.raises(AuthError):
            await BackupOrchestrator(configured_store, remote.factory).backup("user")


class TestRotation:
    """Tests for retention."""

    @pytest.mark.asyncio
    async def test_rotation_keeps_newest(self, configured_store, remote):
        settings = configured_store.read_settings()
        settings.backup.max_snapshots = 3
        configured_store.write_settings(settings)
        for i in range(4):
            remote.put(f"TESTCLIENT_snapshot_user_{1700000000000 + i}.json", {})

        result = await BackupOrchestrator(configured_store, remote.factory).backup("user")

        own = sorted(n for n in remote.files if n.startswith("TESTCLIENT_"))
        assert len(own) == 3
        assert result.name in remote.files
        assert sorted(result.deleted) == [
            "TESTCLIENT_snapshot_user_1700000000000.json",
            "TESTCLIENT_snapshot_user_1700000000001.json",
        ]

    @pytest.mark.asyncio
    async def test_rotation_ignores_other_clients(self, configured_store, remote):
        settings = configured_store.read_settings()
        settings.backup.max_snapshots = 1
        configured_store.write_settings(settings)
        remote.put("OTHER_snapshot_user_1700000000000.json", {})
        remote.put("snapshot_user_1600000000000.json", {})

        await BackupOrchestrator(configured_store, remote.factory).backup("user")

        assert "OTHER_snapshot_user_1700000000000.json" in remote.files
        assert "snapshot_user_1600000000000.json" in remote.files

    @pytest.mark.asyncio
    async def test_ties_broken_by_filename_timestamp(self, configured_store, remote):
        client = remote.factory(None)
        remote.put("TESTCLIENT_snapshot_user_1700000000002.json", {}, lastmod=5000)
        remote.put("TESTCLIENT_snapshot_user_1700000000001.json", {}, lastmod=5000)

        orchestrator = BackupOrchestrator(configured_store, remote.factory)
        deleted = await orchestrator.rotate(client, "TESTCLIENT", 1)

        assert deleted == ["TESTCLIENT_snapshot_user_1700000000001.json"]

    @pytest.mark.asyncio
    async def test_delete_failure_is_not_fatal(self, configured_store, remote):
        client = remote.factory(None)
        for i in range(3):
            remote.put(f"TESTCLIENT_snapshot_user_{1700000000000 + i}.json", {})
        remote.fail_remove["TESTCLIENT_snapshot_user_1700000000000.json"] = ProtocolError("nope", 500)

        deleted = await BackupOrchestrator(configured_store, remote.factory).rotate(client, "TESTCLIENT", 1)

        assert deleted == ["TESTCLIENT_snapshot_user_1700000000001.json"]

    @pytest.mark.asyncio
    async def test_zero_quota_keeps_one(self, configured_store, remote):
        client = remote.factory(None)
        remote.put("TESTCLIENT_snapshot_user_1700000000000.json", {})
        deleted = await BackupOrchestrator(configured_store, remote.factory).rotate(client, "TESTCLIENT", 0)
        assert deleted == []
