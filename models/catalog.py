from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from models.base import Base, BigIntPK


class PackageDetailsCatalogLeaf(Base):
    """
    One package version as discovered by the catalog crawler.
    
    The crawler owns these rows. The download pipeline reads them to find
    package identities that were never fetched, to resolve repository URLs
    and target frameworks, and deletes them when the registry reports the
    package gone.
    """
    __tablename__ = "package_details_catalog_leafs"
    
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    
    package_id = Column(String(128), nullable=False)
    package_id_lowered = Column(String(128), nullable=False, index=True)
    package_version = Column(String(128), nullable=False)
    
    listed = Column(Boolean, nullable=True)
    created = Column(DateTime(timezone=True), nullable=True)
    commit_timestamp = Column(DateTime(timezone=True), nullable=True)
    published = Column(DateTime(timezone=True), nullable=True)
    
    project_url = Column(String(2048), nullable=True)
    icon_url = Column(String(2048), nullable=True)
    
    dependency_groups = relationship(
        "PackageDependencyGroup",
        back_populates="catalog_leaf",
        cascade="all, delete-orphan",
    )
    
    __table_args__ = (
        Index("idx_catalog_leaf_id_version", "package_id_lowered", "package_version"),
    )
    
    def __repr__(self):
        return f"<PackageDetailsCatalogLeaf(package_id={self.package_id}, version={self.package_version})>"


class PackageDependencyGroup(Base):
    """Dependencies declared for one target framework of a package version"""
    __tablename__ = "package_dependency_groups"
    
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    catalog_leaf_id = Column(
        BigIntPK,
        ForeignKey("package_details_catalog_leafs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    target_framework = Column(String(256), nullable=True)
    
    catalog_leaf = relationship("PackageDetailsCatalogLeaf", back_populates="dependency_groups")
    dependencies = relationship(
        "PackageDependency",
        back_populates="group",
        cascade="all, delete-orphan",
    )


class PackageDependency(Base):
    __tablename__ = "package_dependencies"
    
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    dependency_group_id = Column(
        BigIntPK,
        ForeignKey("package_dependency_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    dependency_id = Column(String(128), nullable=True)
    range = Column(String(256), nullable=True)
    
    group = relationship("PackageDependencyGroup", back_populates="dependencies")
