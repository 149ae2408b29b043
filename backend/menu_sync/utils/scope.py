"""Query helpers for scope-keyed tables."""

from menu_sync.connectors.base import ScopeKey


def _match(column, value):
    return column.is_(None) if value is None else column == value


def scope_filters(model, scope: ScopeKey, include_menu_group: bool = True):
    """SQLAlchemy conditions selecting rows of one scope (NULL branch means all branches)."""
    conditions = [model.account_id == scope.account_id, _match(model.branch_id, scope.branch_id)]
    if include_menu_group and hasattr(model, "menu_group_id"):
        conditions.append(_match(model.menu_group_id, scope.menu_group_id))
    return conditions


def scope_from_row(row) -> ScopeKey:
    return ScopeKey(
        account_id=row.account_id,
        branch_id=row.branch_id,
        menu_group_id=getattr(row, "menu_group_id", None),
    )
