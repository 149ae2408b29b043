import json

from menu_sync.connectors.base import Catalog
from menu_sync.constants.sync_enums import ChangeType, EntityType
from menu_sync.services.change_differ import diff_catalogs

from conftest import make_catalog, make_product, with_modifier


def _by_id(changes):
    return {c.entity_id: c for c in changes}


class TestDiffCatalogs:
    def test_no_previous_catalog_adds_everything(self):
        changes = diff_catalogs(None, make_catalog(3))
        assert [c.entity_id for c in changes] == ["p1", "p2", "p3"]
        assert all(c.change_type == ChangeType.ADDED for c in changes)
        assert all(c.entity_type == EntityType.PRODUCT for c in changes)
        assert "category_id" not in json.loads(changes[0].new_value)

    def test_identical_catalogs_have_no_changes(self):
        assert diff_catalogs(make_catalog(), make_catalog()) == []

    def test_added_and_removed_from_id_sets(self):
        previous = make_catalog(3)
        current = Catalog(products=previous.products[1:] + [make_product("p9")])
        changes = _by_id(diff_catalogs(previous, current))

        assert changes["p9"].change_type == ChangeType.ADDED
        assert changes["p1"].change_type == ChangeType.SOFT_DELETED
        old_value = json.loads(changes["p1"].old_value)
        assert old_value["name"] == "Product p1"
        assert "deleted_at" in old_value
        assert set(changes) == {"p1", "p9"}

    def test_modified_fields(self):
        previous = make_catalog()
        current = make_catalog(p2={"price": 42.0, "name": "Big Soup", "description": "hot"})
        changes = diff_catalogs(previous, current)

        assert len(changes) == 1
        change = changes[0]
        assert change.change_type == ChangeType.MODIFIED
        assert change.changed_fields == ["name", "price", "description"]
        assert json.loads(change.old_value)["price"] == 2.0
        assert json.loads(change.new_value)["price"] == 42.0

    def test_category_and_modifier_count_changes(self):
        previous = make_catalog()
        current = Catalog(products=[
            make_product("p1", price=1.0, category_id="cat-2"),
            with_modifier(make_product("p2", price=2.0)),
            make_product("p3", price=3.0),
        ])
        changes = _by_id(diff_catalogs(previous, current))
        assert changes["p1"].changed_fields == ["category"]
        assert changes["p2"].changed_fields == ["modifiers"]

    def test_reactivation_is_restored(self):
        previous = make_catalog(p1={"is_active": False})
        current = make_catalog()
        changes = diff_catalogs(previous, current)

        assert len(changes) == 1
        assert changes[0].change_type == ChangeType.RESTORED
        assert changes[0].changed_fields == ["is_active"]
        assert "restored_at" in json.loads(changes[0].new_value)

    def test_deactivation_is_modified(self):
        changes = diff_catalogs(make_catalog(), make_catalog(p1={"is_active": False}))
        assert changes[0].change_type == ChangeType.MODIFIED
        assert changes[0].changed_fields == ["is_active"]
