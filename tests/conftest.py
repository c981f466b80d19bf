"""Pytest configuration and shared fixtures."""
import sys
from datetime import date, datetime
from pathlib import Path

# Flat module layout: make the project root importable without installing
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from models import LegacyLicense, StoredFeature
from reconciler import InMemoryRepository


SINGLE_PRODUCT_LICENSE = """\
# Hanbit Motors  Site # :123456=Hanbit Motors Corporation
SERVER licsrv01 0A1B2C3D4E5F 28000
VENDOR ugslmd
############################# License Content #############################
# 9409 NX Mach 3 Product Design 1
# NX_DESIGN 1.0 04 Aug 2025 04 Aug 2026 1234567890
# NX_DRAFT 1.0 04 Aug 2025 10 Sep 2026 1234567891
######################### End of License Content ##########################
"""

MULTI_PRODUCT_LICENSE = """\
# Hanbit Motors  Site # :123456=Hanbit Motors Corporation
SERVER licsrv01 0A1B2C3D4E5F 28000
############################# License Content #############################
# 9409 NX Mach 3 Product Design 1
# NX_DESIGN 1.0 04 Aug 2025 04 Aug 2026 1234567890
# 9410 Teamcenter Author 2
# TC_AUTHOR 2.1 01 Jan 2025 31 Dec 2025 2234567890
# TC_VIEW 2.1 01 Jan 2025 31 Dec 2025 2234567891
######################### End of License Content ##########################
"""

INCREMENT_LICENSE = """\
SITE # :778899
HOSTID=FLEXID=9-8A3F21C7
License Content
INCREMENT simatic_pcs7 siemens 9.1 03-sep-2025 uncounted HOSTID=ANY
INCREMENT simatic_wincc siemens 8.0 15-OCT-2025 uncounted HOSTID=ANY
End of License Content
"""


@pytest.fixture
def single_product_text() -> str:
    return SINGLE_PRODUCT_LICENSE


@pytest.fixture
def multi_product_text() -> str:
    return MULTI_PRODUCT_LICENSE


@pytest.fixture
def increment_text() -> str:
    return INCREMENT_LICENSE


@pytest.fixture
def fixed_now() -> datetime:
    """Provide a fixed reference instant for status classification."""
    return datetime(2025, 12, 1, 9, 0, 0)


@pytest.fixture
def legacy_license() -> LegacyLicense:
    return LegacyLicense(
        id=1,
        site_id=10,
        host_id="0A1B2C3D4E5F",
        part_number="9409",
        part_name="NX Mach 3 Product Design",
        file_name="hanbit_20250804_101500.lic",
        manager_name="Kim",
        department="CAE",
    )


@pytest.fixture
def multi_product_features() -> list[StoredFeature]:
    """Rows as the original upload stored them: all on license 1, unlinked."""
    return [
        StoredFeature(id=1, license_id=1, feature_name="NX_DESIGN",
                      serial_number="1234567890", expiry_date=date(2026, 8, 4)),
        StoredFeature(id=2, license_id=1, feature_name="TC_AUTHOR",
                      serial_number="2234567890", expiry_date=date(2025, 12, 31)),
        StoredFeature(id=3, license_id=1, feature_name="TC_VIEW",
                      serial_number="2234567891", expiry_date=date(2025, 12, 31)),
    ]


@pytest.fixture
def repo(legacy_license, multi_product_features) -> InMemoryRepository:
    r = InMemoryRepository()
    r.add_license(legacy_license)
    for f in multi_product_features:
        r.add_feature(f)
    return r
