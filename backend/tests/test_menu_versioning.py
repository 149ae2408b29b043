from menu_sync.connectors.base import ScopeKey
from menu_sync.constants.sync_enums import DetectionType
from menu_sync.services.change_differ import diff_catalogs
from menu_sync.services.menu_versioning import MenuVersioningService

from conftest import make_catalog


class TestMenuVersioning:
    def test_first_sync_detection(self, db, scope):
        detection = MenuVersioningService(db).detect_changes(scope, make_catalog())
        assert detection.is_first_sync
        assert detection.has_changed
        assert detection.change_type == DetectionType.FIRST_SYNC
        assert detection.previous_version is None

    def test_versions_increase_per_scope(self, db, scope):
        versioning = MenuVersioningService(db)
        first = versioning.create_snapshot(scope, make_catalog())
        second = versioning.create_snapshot(scope, make_catalog(p1={"price": 5.0}))
        other = versioning.create_snapshot(ScopeKey(account_id="acct-2"), make_catalog())

        assert (first.version, second.version, other.version) == (1, 2, 1)
        assert versioning.get_latest_snapshot(scope).id == second.id
        assert [s.version for s in versioning.list_snapshots(scope)] == [2, 1]

    def test_no_change_detection(self, db, scope):
        versioning = MenuVersioningService(db)
        versioning.create_snapshot(scope, make_catalog())
        detection = versioning.detect_changes(scope, make_catalog())
        assert not detection.has_changed
        assert detection.change_type == DetectionType.NO_CHANGE
        assert detection.previous_version == 1

    def test_snapshot_catalog_round_trip(self, db, scope):
        versioning = MenuVersioningService(db)
        catalog = make_catalog(p1={"description": "spicy"})
        snapshot = versioning.create_snapshot(scope, catalog)
        assert snapshot.products_count == 3
        assert snapshot.categories_count == 1
        assert versioning.get_snapshot_catalog(snapshot) == catalog

    def test_record_changes(self, db, scope):
        versioning = MenuVersioningService(db)
        versioning.create_snapshot(scope, make_catalog())
        snapshot = versioning.create_snapshot(scope, make_catalog(p2={"price": 7.0}))
        changes = diff_catalogs(make_catalog(), make_catalog(p2={"price": 7.0}))
        versioning.record_changes(snapshot, changes)

        logs = versioning.get_change_logs(snapshot.id)
        assert len(logs) == 1
        assert logs[0].entity_id == "p2"
        assert logs[0].changed_fields == "price"
        assert logs[0].previous_version == 1
        assert logs[0].current_version == 2

    def test_mark_synced_leaves_content_untouched(self, db, scope):
        versioning = MenuVersioningService(db)
        snapshot = versioning.create_snapshot(scope, make_catalog())
        original_hash = snapshot.snapshot_hash

        versioning.mark_snapshot_as_synced(snapshot.id, "imp-1", "vendor-1")
        db.refresh(snapshot)
        assert snapshot.is_synced
        assert snapshot.import_id == "imp-1"
        assert snapshot.vendor_code == "vendor-1"
        assert snapshot.snapshot_hash == original_hash
        assert snapshot.version == 1
