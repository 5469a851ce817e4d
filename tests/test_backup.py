"""Tests for BackupCoordinator: envelope export, validation, restore and remote sync."""

import asyncio
import copy
from typing import Any
from unittest.mock import AsyncMock

import pytest

from tailorbook.backup import FORMAT_LEGACY, FORMAT_V2, BackupCoordinator
from tailorbook.config import ShopConfig
from tailorbook.constants import (
    BACKUP_VERSION,
    KEY_SHOP_INFO,
    KEY_SIMPLE_MEASUREMENT_LABELS,
    Partition,
)
from tailorbook.errors import (
    MalformedBackupError,
    RemoteAuthError,
    RemoteNotFoundError,
    RemoteSyncFailure,
    RemoteTimeoutError,
)
from tailorbook.repository import LedgerRepository
from tailorbook.stores import MemoryStore


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _populated_repo() -> LedgerRepository:
    repo = LedgerRepository(MemoryStore(), config=ShopConfig(shop_name="Best Tailors"))
    ali = await repo.create_customer(Partition.PROFESSIONAL, "Ali", "0700")
    await repo.create_order(Partition.PROFESSIONAL, ali.id, "suit", 3000, 2000, 1000)
    sara = await repo.create_customer(Partition.SIMPLE, "Sara", "0799")
    await repo.record_transaction(Partition.SIMPLE, sara.id, 150, "hem")
    return repo


def _mock_remote(envelope: dict[str, Any] | None = None, error: Exception | None = None):
    remote = AsyncMock()
    if error:
        remote.upsert_backup = AsyncMock(side_effect=error)
        remote.fetch_backup = AsyncMock(side_effect=error)
    else:
        remote.upsert_backup = AsyncMock(return_value=None)
        remote.fetch_backup = AsyncMock(return_value=envelope)
    return remote


def _legacy_flat() -> dict[str, Any]:
    return {
        "customers": [{"id": "c1", "name": "Old", "phone": "1", "balance": 200}],
        "orders": [{"id": "o1", "customerId": "c1", "status": "در حال دوخت"}],
        "transactions": [{"id": "t1", "customerId": "c1", "orderId": "o1", "amount": 200}],
    }


# ---------------------------------------------------------------------------
# Export and validation
# ---------------------------------------------------------------------------


class TestExport:
    @pytest.mark.asyncio
    async def test_envelope_shape(self) -> None:
        coordinator = BackupCoordinator(await _populated_repo())
        envelope = await coordinator.export_snapshot()
        assert envelope["version"] == BACKUP_VERSION
        assert len(envelope["professional"]["customers"]) == 1
        assert len(envelope["professional"]["orders"]) == 1
        assert len(envelope["simple"]["transactions"]) == 1
        assert envelope["shopInfo"]["name"] == "Best Tailors"
        assert "neck" in envelope["measurementLabels"]
        assert envelope["exportedAt"]
        assert BackupCoordinator.validate(envelope)

    @pytest.mark.asyncio
    async def test_export_is_read_only(self) -> None:
        repo = await _populated_repo()
        before = (await repo.load(Partition.PROFESSIONAL)).to_dict()
        await BackupCoordinator(repo).export_snapshot()
        assert (await repo.load(Partition.PROFESSIONAL)).to_dict() == before

    @pytest.mark.asyncio
    async def test_shop_info_read_from_store(self) -> None:
        store = MemoryStore({KEY_SHOP_INFO: {"name": "Best Tailors", "phone": "0700"}})
        envelope = await BackupCoordinator(LedgerRepository(store)).export_snapshot()
        assert envelope["shopInfo"]["name"] == "Best Tailors"
        assert envelope["shopInfo"]["phone"] == "0700"

        target_repo = LedgerRepository(MemoryStore())
        await BackupCoordinator(target_repo).import_snapshot(envelope)
        assert target_repo.config.shop_name == "Best Tailors"
        assert target_repo.config.shop_phone == "0700"

    @pytest.mark.asyncio
    async def test_simple_labels_exported_and_restored(self) -> None:
        repo = await _populated_repo()
        await repo.save_measurement_labels({"length": "Dress length"}, Partition.SIMPLE)
        envelope = await BackupCoordinator(repo).export_snapshot()
        assert envelope["simpleMeasurementLabels"] == {"length": "Dress length"}

        target_store = MemoryStore()
        target_repo = LedgerRepository(target_store)
        await BackupCoordinator(target_repo).import_snapshot(envelope)
        assert target_repo.config.simple_measurement_labels == {"length": "Dress length"}
        assert await target_store.get(KEY_SIMPLE_MEASUREMENT_LABELS) == {"length": "Dress length"}


class TestValidate:
    def test_rejects_wrong_version(self) -> None:
        envelope = {"version": "1.0", "professional": {}, "simple": {}}
        assert not BackupCoordinator.validate(envelope)

    def test_rejects_missing_partition(self) -> None:
        block = {"customers": [], "orders": [], "transactions": []}
        assert not BackupCoordinator.validate({"version": BACKUP_VERSION, "professional": block})

    def test_rejects_non_list_collection(self) -> None:
        good = {"customers": [], "orders": [], "transactions": []}
        bad = {"customers": {}, "orders": [], "transactions": []}
        assert not BackupCoordinator.validate(
            {"version": BACKUP_VERSION, "professional": good, "simple": bad}
        )

    def test_detects_formats(self) -> None:
        good = {"customers": [], "orders": [], "transactions": []}
        v2 = {"version": BACKUP_VERSION, "professional": good, "simple": good}
        assert BackupCoordinator.detect_format(v2) == FORMAT_V2
        assert BackupCoordinator.detect_format(_legacy_flat()) == FORMAT_LEGACY
        assert BackupCoordinator.detect_format({"professional": _legacy_flat()}) == FORMAT_LEGACY
        assert BackupCoordinator.detect_format({"orders": []}) is None
        assert BackupCoordinator.detect_format([1, 2]) is None


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


class TestImport:
    @pytest.mark.asyncio
    async def test_round_trip_into_empty_store(self) -> None:
        source = await _populated_repo()
        envelope = await BackupCoordinator(source).export_snapshot()

        target_repo = LedgerRepository(MemoryStore())
        report = await BackupCoordinator(target_repo).import_snapshot(envelope)
        assert report.format == FORMAT_V2
        assert report.partitions == ["professional", "simple"]
        assert report.repaired_count == 0

        for partition in Partition:
            assert (await target_repo.load(partition)).to_dict() == envelope[partition.value]
        assert target_repo.config.shop_name == "Best Tailors"

    @pytest.mark.asyncio
    async def test_full_replace_not_merge(self) -> None:
        source = await _populated_repo()
        envelope = await BackupCoordinator(source).export_snapshot()
        target_repo = LedgerRepository(MemoryStore())
        await target_repo.create_customer(Partition.PROFESSIONAL, "Local", "5")
        await BackupCoordinator(target_repo).import_snapshot(envelope)
        names = [c.name for c in (await target_repo.load(Partition.PROFESSIONAL)).customers]
        assert names == ["Ali"]

    @pytest.mark.asyncio
    async def test_legacy_flat_restores_professional_only(self) -> None:
        repo = LedgerRepository(MemoryStore())
        simple_customer = await repo.create_customer(Partition.SIMPLE, "Keep", "9")
        report = await BackupCoordinator(repo).import_snapshot(_legacy_flat())
        assert report.format == FORMAT_LEGACY
        assert report.partitions == ["professional"]
        assert report.codes_assigned == 1

        pro = await repo.load(Partition.PROFESSIONAL)
        assert pro.customers[0].code == 1
        assert pro.orders[0].status.value == "processing"
        simple = await repo.load(Partition.SIMPLE)
        assert [c.id for c in simple.customers] == [simple_customer.id]

    @pytest.mark.asyncio
    async def test_malformed_writes_nothing(self) -> None:
        store = MemoryStore()
        repo = LedgerRepository(store)
        await repo.create_customer(Partition.PROFESSIONAL, "Ali", "0700")
        before = copy.deepcopy(store._data)
        with pytest.raises(MalformedBackupError, match="not recognized"):
            await BackupCoordinator(repo).import_snapshot({"version": "2.0", "simple": "x"})
        assert store._data == before

    @pytest.mark.asyncio
    async def test_drifted_balances_repaired_and_reported(self) -> None:
        envelope = _legacy_flat()
        envelope["customers"][0]["balance"] = 50
        repo = LedgerRepository(MemoryStore())
        report = await BackupCoordinator(repo).import_snapshot(envelope)
        assert report.repaired_count == 1
        item = report.repaired["professional"][0]
        assert item.cached == 50
        assert item.computed == 200
        assert (await repo.load(Partition.PROFESSIONAL)).customers[0].balance == 200

    @pytest.mark.asyncio
    async def test_report_dict(self) -> None:
        repo = LedgerRepository(MemoryStore())
        report = await BackupCoordinator(repo).import_snapshot(_legacy_flat())
        data = report.to_dict()
        assert data["counts"]["professional"] == {"customers": 1, "orders": 1, "transactions": 1}
        assert data["repaired"] == {}

    @pytest.mark.asyncio
    async def test_malformed_field_values_tolerated(self) -> None:
        envelope = await BackupCoordinator(await _populated_repo()).export_snapshot()
        block = envelope["professional"]
        block["customers"][0]["code"] = "seven"
        block["orders"][0]["createdAtMs"] = "yesterday"
        block["orders"][0]["styleDetails"] = ["wide collar"]
        block["transactions"][0]["createdAtMs"] = [1]

        repo = LedgerRepository(MemoryStore())
        report = await BackupCoordinator(repo).import_snapshot(envelope)
        assert report.codes_assigned == 1
        ledger = await repo.load(Partition.PROFESSIONAL)
        assert ledger.customers[0].code == 1
        assert ledger.orders[0].style_details == {}
        assert len(ledger.transactions) == len(block["transactions"])

    @pytest.mark.asyncio
    async def test_invalid_labels_write_nothing(self) -> None:
        envelope = await BackupCoordinator(await _populated_repo()).export_snapshot()
        envelope["measurementLabels"] = {"neck": ""}
        store = MemoryStore()
        repo = LedgerRepository(store)
        await repo.create_customer(Partition.PROFESSIONAL, "Local", "5")
        before = copy.deepcopy(store._data)
        with pytest.raises(MalformedBackupError, match="measurementLabels"):
            await BackupCoordinator(repo).import_snapshot(envelope)
        assert store._data == before
        names = [c.name for c in (await repo.load(Partition.PROFESSIONAL)).customers]
        assert names == ["Local"]

    @pytest.mark.asyncio
    async def test_non_dict_labels_rejected(self) -> None:
        envelope = await BackupCoordinator(await _populated_repo()).export_snapshot()
        envelope["simpleMeasurementLabels"] = ["length"]
        store = MemoryStore()
        with pytest.raises(MalformedBackupError, match="simpleMeasurementLabels"):
            await BackupCoordinator(LedgerRepository(store)).import_snapshot(envelope)
        assert store._data == {}

    @pytest.mark.asyncio
    async def test_non_dict_shop_info_skipped(self) -> None:
        envelope = await BackupCoordinator(await _populated_repo()).export_snapshot()
        envelope["shopInfo"] = "Best Tailors"
        store = MemoryStore()
        repo = LedgerRepository(store)
        report = await BackupCoordinator(repo).import_snapshot(envelope)
        assert report.partitions == ["professional", "simple"]
        assert repo.config.shop_name == ""
        assert await store.get(KEY_SHOP_INFO) is None


class TestFileText:
    def test_loads_invalid_json(self) -> None:
        with pytest.raises(MalformedBackupError, match="not valid JSON"):
            BackupCoordinator.loads("{oops")

    def test_dumps_keeps_unicode(self) -> None:
        text = BackupCoordinator.dumps({"name": "علی"})
        assert "علی" in text
        assert BackupCoordinator.loads(text) == {"name": "علی"}


# ---------------------------------------------------------------------------
# Remote
# ---------------------------------------------------------------------------


class TestRemote:
    @pytest.mark.asyncio
    async def test_upload_sends_envelope(self) -> None:
        remote = _mock_remote()
        coordinator = BackupCoordinator(await _populated_repo(), remote=remote)
        envelope = await coordinator.upload_to_remote("user-1")
        remote.upsert_backup.assert_awaited_once_with("user-1", envelope)

    @pytest.mark.asyncio
    async def test_upload_without_remote(self) -> None:
        coordinator = BackupCoordinator(await _populated_repo())
        with pytest.raises(RemoteSyncFailure, match="not configured"):
            await coordinator.upload_to_remote("user-1")

    @pytest.mark.asyncio
    async def test_upload_timeout(self) -> None:
        async def _hang(*args: Any) -> None:
            await asyncio.sleep(10)

        remote = _mock_remote()
        remote.upsert_backup = _hang
        coordinator = BackupCoordinator(
            await _populated_repo(), remote=remote, remote_timeout_secs=0.01,
        )
        with pytest.raises(RemoteTimeoutError, match="timed out"):
            await coordinator.upload_to_remote("user-1")

    @pytest.mark.asyncio
    async def test_download_restores(self) -> None:
        envelope = await BackupCoordinator(await _populated_repo()).export_snapshot()
        repo = LedgerRepository(MemoryStore())
        coordinator = BackupCoordinator(repo, remote=_mock_remote(envelope))
        report = await coordinator.download_from_remote("user-1")
        assert report.partitions == ["professional", "simple"]
        assert len((await repo.load(Partition.PROFESSIONAL)).orders) == 1

    @pytest.mark.asyncio
    async def test_download_missing_backup(self) -> None:
        repo = LedgerRepository(MemoryStore())
        coordinator = BackupCoordinator(repo, remote=_mock_remote(None))
        with pytest.raises(RemoteNotFoundError):
            await coordinator.download_from_remote("user-1")

    @pytest.mark.asyncio
    async def test_download_failure_leaves_local_data(self) -> None:
        repo = await _populated_repo()
        before = (await repo.load(Partition.PROFESSIONAL)).to_dict()
        coordinator = BackupCoordinator(
            repo, remote=_mock_remote(error=RemoteAuthError("expired", status_code=401)),
        )
        with pytest.raises(RemoteAuthError):
            await coordinator.download_from_remote("user-1")
        assert (await repo.load(Partition.PROFESSIONAL)).to_dict() == before
