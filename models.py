"""
License Tracker — Core Pydantic Models
"""
from __future__ import annotations
from datetime import date, datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

# ============================================================
# Enums
# ============================================================

class ExpiryStatus(str, Enum):
    EXPIRED = "EXPIRED"
    EXPIRES_TODAY = "EXPIRES_TODAY"
    EXPIRES_SOON = "EXPIRES_SOON"
    EXPIRES_WARNING = "EXPIRES_WARNING"
    ACTIVE = "ACTIVE"

    @property
    def severity(self) -> int:
        """Higher is more urgent. EXPIRED=4 ... ACTIVE=0."""
        return _SEVERITY[self]

_SEVERITY = {
    ExpiryStatus.EXPIRED: 4,
    ExpiryStatus.EXPIRES_TODAY: 3,
    ExpiryStatus.EXPIRES_SOON: 2,
    ExpiryStatus.EXPIRES_WARNING: 1,
    ExpiryStatus.ACTIVE: 0,
}

class ProductStatus(str, Enum):
    ACTIVE = "active"
    WARNING = "warning"
    EXPIRED = "expired"

# ============================================================
# Parse Output (value objects)
# ============================================================

class SiteInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    site_name: Optional[str] = None
    site_number: Optional[str] = None   # natural key for site dedup
    full_site_name: Optional[str] = None
    host_id: Optional[str] = None

class PartInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    part_number: Optional[str] = None
    part_name: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=1)

    @property
    def is_empty(self) -> bool:
        return self.part_number is None and self.part_name is None and self.quantity is None

class FeatureEntry(BaseModel):
    """A single feature grant extracted from a license body."""
    model_config = ConfigDict(frozen=True)

    feature_name: str
    version: str
    start_date: Optional[date] = None
    expiry_date: Optional[date] = None
    serial_number: Optional[str] = None
    expiry_inferred: bool = False     # INCREMENT fallback reuses the start date
    warnings: list[str] = Field(default_factory=list)

class ProductGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    part_info: PartInfo = Field(default_factory=PartInfo)
    features: list[FeatureEntry] = Field(default_factory=list)

    @property
    def earliest_expiry(self) -> Optional[date]:
        dates = [f.expiry_date for f in self.features if f.expiry_date]
        return min(dates) if dates else None

    @property
    def latest_expiry(self) -> Optional[date]:
        dates = [f.expiry_date for f in self.features if f.expiry_date]
        return max(dates) if dates else None

class ParsedLicense(BaseModel):
    """Full output of one parse call."""
    model_config = ConfigDict(frozen=True)

    site_info: SiteInfo = Field(default_factory=SiteInfo)
    products: list[ProductGroup] = Field(default_factory=lambda: [ProductGroup()])
    warnings: list[str] = Field(default_factory=list)

    @property
    def features(self) -> list[FeatureEntry]:
        return [f for p in self.products for f in p.features]

    @property
    def part_info(self) -> PartInfo:
        return self.products[0].part_info if self.products else PartInfo()

    @property
    def is_multi_product(self) -> bool:
        return len(self.products) > 1

# ============================================================
# Derived Models
# ============================================================

class StatusResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: ExpiryStatus
    days_left: int

class LicenseSummary(BaseModel):
    site_info: SiteInfo = Field(default_factory=SiteInfo)
    part_info: PartInfo = Field(default_factory=PartInfo)
    total_features: int = 0
    by_status: dict[ExpiryStatus, int] = Field(
        default_factory=lambda: {s: 0 for s in ExpiryStatus})
    undated_features: int = 0
    earliest_expiry: Optional[date] = None
    latest_expiry: Optional[date] = None

    # Three buckets shown on the upload result / dashboard
    @property
    def active_count(self) -> int:
        return self.by_status[ExpiryStatus.ACTIVE]

    @property
    def expiring_count(self) -> int:
        return (self.by_status[ExpiryStatus.EXPIRES_TODAY]
                + self.by_status[ExpiryStatus.EXPIRES_SOON]
                + self.by_status[ExpiryStatus.EXPIRES_WARNING])

    @property
    def expired_count(self) -> int:
        return self.by_status[ExpiryStatus.EXPIRED]

class ValidationResult(BaseModel):
    is_valid: bool
    reasons: list[str] = Field(default_factory=list)
    signals: list[str] = Field(default_factory=list)

# ============================================================
# Storage Rows (migration input)
# ============================================================

class LegacyLicense(BaseModel):
    id: int
    site_id: Optional[int] = None
    host_id: Optional[str] = None
    part_number: Optional[str] = None
    part_name: Optional[str] = None
    file_name: Optional[str] = None
    manager_name: Optional[str] = None
    department: Optional[str] = None
    client_name: Optional[str] = None
    upload_date: Optional[datetime] = None
    memo: Optional[str] = None

class StoredFeature(BaseModel):
    id: int
    license_id: int
    feature_name: str
    serial_number: Optional[str] = None
    expiry_date: Optional[date] = None
    product_id: Optional[int] = None

    @property
    def is_linked(self) -> bool:
        return self.product_id is not None
