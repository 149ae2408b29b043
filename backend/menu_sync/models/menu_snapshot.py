"""Menu snapshot model: one immutable, versioned, hashed catalog state per scope."""

from sqlalchemy import Column, Integer, String, DateTime, Boolean, LargeBinary, Index
from sqlalchemy.sql import func
from menu_sync.database import Base
from menu_sync.utils.clock import utcnow


class MenuSnapshot(Base):
    """Versioned catalog snapshot."""

    __tablename__ = "menu_snapshots"

    id = Column(Integer, primary_key=True, index=True)

    # Scope key
    account_id = Column(String(100), nullable=False)
    branch_id = Column(String(100), nullable=True)  # None = all branches
    menu_group_id = Column(String(100), nullable=True)

    version = Column(Integer, nullable=False)
    snapshot_hash = Column(String(64), nullable=False)
    products_count = Column(Integer, default=0, nullable=False)
    categories_count = Column(Integer, default=0, nullable=False)
    modifiers_count = Column(Integer, default=0, nullable=False)
    compressed_data = Column(LargeBinary, nullable=True)
    snapshot_date = Column(DateTime(timezone=True), nullable=False)

    # Downstream sync status
    is_synced = Column(Boolean, default=False, nullable=False)
    import_id = Column(String(200), nullable=True)
    vendor_code = Column(String(100), nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_menu_snapshots_scope_version', 'account_id', 'branch_id', 'menu_group_id', 'version'),
        Index('idx_menu_snapshots_hash', 'snapshot_hash'),
    )

    @classmethod
    def create(cls, scope, version: int, snapshot_hash: str, products_count: int,
               categories_count: int, modifiers_count: int, compressed_data=None) -> "MenuSnapshot":
        return cls(
            account_id=scope.account_id,
            branch_id=scope.branch_id,
            menu_group_id=scope.menu_group_id,
            version=version,
            snapshot_hash=snapshot_hash,
            products_count=products_count,
            categories_count=categories_count,
            modifiers_count=modifiers_count,
            compressed_data=compressed_data,
            snapshot_date=utcnow(),
            is_synced=False,
        )

    def __repr__(self):
        return f"<MenuSnapshot(id={self.id}, account='{self.account_id}', version={self.version}, hash='{self.snapshot_hash[:12]}')>"
