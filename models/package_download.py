from sqlalchemy import Column, String, BigInteger, DateTime, Index
from models.base import Base


class PackageDownload(Base):
    """
    Current download state of one package.
    
    One row per package identity, keyed by the case-folded id. Created on
    the first successful registry fetch and overwritten in place by every
    later fetch. ``package_id`` keeps the most recently seen casing.
    
    ``latest_download_count_checked_utc`` drives the daily selection of
    unprocessed packages, so it is indexed.
    """
    __tablename__ = "package_downloads"
    
    package_id_lowered = Column(String(128), primary_key=True)
    package_id = Column(String(128), nullable=False)
    
    latest_download_count = Column(BigInteger, nullable=True)
    latest_download_count_checked_utc = Column(DateTime(timezone=True), nullable=False)
    icon_url = Column(String(2048), nullable=True)
    
    __table_args__ = (
        Index("idx_package_downloads_checked", "latest_download_count_checked_utc"),
        Index("idx_package_downloads_count", "latest_download_count"),
    )
    
    def __repr__(self):
        return f"<PackageDownload(package_id={self.package_id}, count={self.latest_download_count})>"
