import pytest

from menu_sync.connectors.base import Catalog
from menu_sync.services.menu_hasher import canonical_form, compute_hash, compute_menu_hash

from conftest import make_catalog, make_product, with_modifier


class TestMenuHasher:
    def test_hash_is_lowercase_sha256_hex(self):
        digest = compute_menu_hash(make_catalog())
        assert len(digest) == 64
        assert digest == digest.lower()

    def test_product_order_does_not_matter(self):
        catalog = make_catalog(5)
        reversed_catalog = Catalog(products=list(reversed(catalog.products)), categories=catalog.categories)
        assert compute_menu_hash(catalog) == compute_menu_hash(reversed_catalog)

    def test_modifier_and_option_order_does_not_matter(self):
        product = with_modifier(make_product("p1"))
        group = product.modifiers[0]
        shuffled = product.model_copy(update={
            "modifiers": [group.model_copy(update={"options": list(reversed(group.options))})]
        })
        assert compute_menu_hash(Catalog(products=[product])) == compute_menu_hash(Catalog(products=[shuffled]))

    @pytest.mark.parametrize("field, value", [
        ("name", "Renamed"),
        ("price", 99.5),
        ("is_active", False),
        ("category_id", "cat-2"),
    ])
    def test_hashed_fields_change_the_hash(self, field, value):
        catalog = make_catalog()
        changed = make_catalog(p2={field: value})
        assert compute_menu_hash(catalog) != compute_menu_hash(changed)

    def test_option_price_changes_the_hash(self):
        product = with_modifier(make_product("p1"))
        group = product.modifiers[0]
        options = [o.model_copy(update={"price": o.price + 1}) for o in group.options]
        repriced = product.model_copy(update={"modifiers": [group.model_copy(update={"options": options})]})
        assert compute_menu_hash(Catalog(products=[product])) != compute_menu_hash(Catalog(products=[repriced]))

    def test_description_is_not_hashed(self):
        catalog = make_catalog()
        edited = make_catalog(p1={"description": "Now with extra cheese"})
        assert compute_menu_hash(catalog) == compute_menu_hash(edited)

    def test_canonical_form_layout(self):
        product = make_product("p1", price=2.5, name="Soup", category_id=None)
        assert canonical_form([product]) == "p1|Soup|2.5|True|None|;"

    def test_empty_catalog_hashes(self):
        assert compute_menu_hash(Catalog()) == compute_menu_hash(Catalog(products=[]))

    def test_compute_hash_is_stable(self):
        assert compute_hash({"a": 1}) == compute_hash({"a": 1})
        assert compute_hash({"a": 1}) != compute_hash({"a": 2})
