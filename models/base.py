from sqlalchemy import BigInteger, Integer, JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# Postgres types with portable fallbacks for the SQLite test database
BigIntPK = BigInteger().with_variant(Integer, "sqlite")
JSONType = JSON().with_variant(JSONB, "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class JobName(str, enum.Enum):
    """Scheduled batch jobs"""
    DAILY_DOWNLOAD_PUBLISHER = "daily_download_publisher"
    TRENDING_SNAPSHOT = "trending_snapshot"
    TFM_ADOPTION = "tfm_adoption"


class JobStatus(str, enum.Enum):
    """Batch job run status"""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
