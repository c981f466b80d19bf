"""
License Tracker — License File Parser

Handles the semi-structured license text dialect seen in uploaded files:
1. Header lines carrying site identity and a host identifier
2. A "License Content" body block with product indicator lines
3. Feature grant lines (`# NAME VER START EXPIRY SERIAL`)
4. INCREMENT lines when the grant table is absent
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Optional, Union

from models import (
    FeatureEntry, ParsedLicense, PartInfo, ProductGroup, SiteInfo,
    ValidationResult,
)

logger = logging.getLogger(__name__)

# ============================================================
# Errors
# ============================================================

class LicenseParseError(ValueError):
    """Base class for parse failures."""

class MissingContentBlock(LicenseParseError):
    def __init__(self, message: str = "License Content block not found"):
        super().__init__(message)

class UnparseableDate(LicenseParseError):
    def __init__(self, token: str):
        self.token = token
        super().__init__(f"unparseable date: {token!r}")

# ============================================================
# Ordered Pattern Chains
# ============================================================

@dataclass(frozen=True)
class MatchAttempt:
    """Result of running a pattern chain: the winning strategy and its groups,
    or the no-match variant (strategy is None)."""
    strategy: Optional[str] = None
    groups: tuple[Any, ...] = ()

    @property
    def matched(self) -> bool:
        return self.strategy is not None

NO_MATCH = MatchAttempt()

# A strategy matcher is a compiled pattern, or a callable returning groups or None
Matcher = Union[re.Pattern, Callable[[str], Optional[tuple]]]

def first_match(chain: list[tuple[str, Matcher]], text: str) -> MatchAttempt:
    for name, matcher in chain:
        if isinstance(matcher, re.Pattern):
            m = matcher.search(text)
            groups = m.groups() if m else None
        else:
            groups = matcher(text)
        if groups is not None:
            return MatchAttempt(strategy=name, groups=groups)
    return NO_MATCH

def all_matches(chain: list[tuple[str, re.Pattern]], text: str) -> MatchAttempt:
    """First strategy with any hit wins; groups holds one tuple per hit."""
    for name, pat in chain:
        hits = tuple(m.groups() for m in pat.finditer(text))
        if hits:
            return MatchAttempt(strategy=name, groups=hits)
    return NO_MATCH

def normalize_newlines(text: str) -> str:
    return text.replace('\r\n', '\n').replace('\r', '\n')

# ============================================================
# Content Block Extraction
# ============================================================

START_MARKER = re.compile(r'^[ \t]*#+[ \t]*License Content[ \t]*#+[ \t]*\r?$', re.MULTILINE)
END_MARKER = re.compile(r'^[ \t]*#+[ \t]*End of License Content[ \t]*#+[ \t]*\r?$', re.MULTILINE)
ALT_START = "License Content"
ALT_END = "End of License Content"

def extract_content_block(text: str) -> str:
    """Return the text between the License Content markers (markers excluded)."""
    text = normalize_newlines(text)
    start = START_MARKER.search(text)
    if start:
        end = END_MARKER.search(text, start.end())
        if end:
            return text[start.end():end.start()]

    alt_start = text.find(ALT_START)
    if alt_start != -1:
        alt_end = text.find(ALT_END, alt_start + len(ALT_START))
        if alt_end != -1:
            logger.debug("Using loose License Content markers")
            return text[alt_start + len(ALT_START):alt_end]

    raise MissingContentBlock()

# ============================================================
# Date Normalization
# ============================================================

MONTHS = {
    'jan': 1, 'feb': 2, 'mar': 3, 'apr': 4, 'may': 5, 'jun': 6,
    'jul': 7, 'aug': 8, 'sep': 9, 'oct': 10, 'nov': 11, 'dec': 12,
}

DATE_DIALECTS = [
    re.compile(r'^(\d{1,2})\s+([A-Za-z]{3})\s+(\d{4})$'),   # 04 Aug 2025
    re.compile(r'^(\d{1,2})-([A-Za-z]{3})-(\d{4})$'),       # 03-sep-2025
]

def normalize_date(token: str) -> str:
    """Convert 'DD Mon YYYY' or 'DD-Mon-YYYY' into 'YYYY-MM-DD'."""
    t = (token or '').strip()
    for pat in DATE_DIALECTS:
        m = pat.match(t)
        if not m:
            continue
        month = MONTHS.get(m.group(2).lower())
        if month is None:
            break
        try:
            return date(int(m.group(3)), month, int(m.group(1))).isoformat()
        except ValueError:
            break
    raise UnparseableDate(token)

# ============================================================
# Header / Site Parsing
# ============================================================

UNKNOWN_SITE_NAME = 'Unknown Site'
UNKNOWN_FULL_SITE_NAME = 'Unknown Corporation'

SITE_PATTERNS = [
    ('site_full', re.compile(r'#[ \t]*(.+?)[ \t]+Site[ \t]*#[ \t]*:[ \t]*(\d+)[ \t]*=[ \t]*(.+)')),
    ('site_number', re.compile(r'Site[ \t]*#[ \t]*:[ \t]*(\d+)')),
    ('site_number_upper', re.compile(r'SITE[ \t]*#[ \t]*:[ \t]*(\d+)')),
]

HOST_ID_PATTERNS = [
    ('flexid', re.compile(r'HOSTID=FLEXID=(\S+)')),
    ('hostid', re.compile(r'HOSTID=(\S+)')),
    ('host', re.compile(r'HOST=(\S+)')),
    ('server_line', re.compile(r'SERVER\s+\S+\s+([A-F0-9]{12})\s+\d+')),
]

def parse_site_info(text: str) -> SiteInfo:
    """Site and host-id chains run independently over the whole document."""
    fields: dict[str, Optional[str]] = {}

    site = first_match(SITE_PATTERNS, text)
    if site.strategy == 'site_full':
        fields['site_name'] = site.groups[0].strip()
        fields['site_number'] = site.groups[1]
        fields['full_site_name'] = site.groups[2].strip()
    elif site.matched:
        fields['site_name'] = UNKNOWN_SITE_NAME
        fields['site_number'] = site.groups[0]
        fields['full_site_name'] = UNKNOWN_FULL_SITE_NAME
    else:
        logger.debug("No site line recognized")

    host = first_match(HOST_ID_PATTERNS, text)
    if host.matched:
        fields['host_id'] = host.groups[0]

    return SiteInfo(**fields)

# ============================================================
# Feature Enumeration
# ============================================================

_DATE_SPACED = r'\d{1,2}[ \t]+[A-Za-z]{3}[ \t]+\d{4}'

FEATURE_LINE = re.compile(
    r'#[ \t]+(\w+)[ \t]+([\d.]+)[ \t]+(' + _DATE_SPACED + r')[ \t]+(' + _DATE_SPACED + r')[ \t]+(\d+)'
)
INCREMENT_LINE = re.compile(
    r'INCREMENT[ \t]+(\w+)[ \t]+\w+[ \t]+([\d.]+)[ \t]+(\d{1,2}-[A-Za-z]{3}-\d{4})'
)

FEATURE_STRATEGIES = [
    ('grant_line', FEATURE_LINE),
    ('increment_line', INCREMENT_LINE),
]

DATE_POLICIES = ('warn', 'raise', 'today')

class DateResolver:
    """Applies the unparseable-date policy for one parse call."""

    def __init__(self, policy: str = 'warn', today: Optional[date] = None):
        if policy not in DATE_POLICIES:
            raise ValueError(f"date policy must be one of {DATE_POLICIES}")
        if policy == 'today' and today is None:
            raise ValueError("date policy 'today' needs a reference date")
        self.policy = policy
        self.today = today

    def resolve(self, token: str, warnings: list[str]) -> Optional[date]:
        try:
            return date.fromisoformat(normalize_date(token))
        except UnparseableDate as e:
            if self.policy == 'raise':
                raise
            logger.warning("Date parse failed: %r (policy=%s)", token, self.policy)
            if self.policy == 'today':
                warnings.append(f"{e}; substituted {self.today.isoformat()}")
                return self.today
            warnings.append(str(e))
            return None

def parse_features(body: str, resolver: Optional[DateResolver] = None) -> list[FeatureEntry]:
    resolver = resolver or DateResolver()
    attempt = all_matches(FEATURE_STRATEGIES, body)
    features: list[FeatureEntry] = []

    for groups in attempt.groups:
        warnings: list[str] = []
        if attempt.strategy == 'grant_line':
            name, version, start_token, expiry_token, serial = groups
            features.append(FeatureEntry(
                feature_name=name,
                version=version,
                start_date=resolver.resolve(start_token, warnings),
                expiry_date=resolver.resolve(expiry_token, warnings),
                serial_number=serial,
                warnings=warnings,
            ))
        else:
            name, version, token = groups
            d = resolver.resolve(token, warnings)
            features.append(FeatureEntry(
                feature_name=name,
                version=version,
                start_date=d,
                expiry_date=d,
                serial_number=None,
                expiry_inferred=True,
                warnings=warnings,
            ))

    if attempt.strategy == 'increment_line':
        logger.debug("Used INCREMENT fallback (%d features)", len(features))

    return _dedup_features(features)

def _dedup_features(features: list[FeatureEntry]) -> list[FeatureEntry]:
    """(feature_name, serial_number) is unique when a serial is present."""
    seen: set[tuple[str, str]] = set()
    result = []
    for f in features:
        if f.serial_number:
            key = (f.feature_name, f.serial_number)
            if key in seen:
                logger.info("Dropping duplicate feature %s/%s", *key)
                continue
            seen.add(key)
        result.append(f)
    return result

# ============================================================
# Part / Product Parsing
# ============================================================

PRODUCT_LINE = re.compile(r'^[ \t]*#[ \t]+(\d+)[ \t]+(.+?)[ \t]+([1-9]\d*)[ \t]*\r?$', re.MULTILINE)
PART_NUMBER_LABEL = re.compile(r'\bPart[ \t]*Number[ \t]*:?[ \t]*(\d+)', re.IGNORECASE)
PRODUCT_LABEL = re.compile(r'\bProduct[ \t]*:[ \t]*(.+)', re.IGNORECASE)

def find_product_lines(body: str) -> list[re.Match]:
    """Product indicator lines, excluding anything shaped like a feature line."""
    return [m for m in PRODUCT_LINE.finditer(body) if not FEATURE_LINE.search(m.group(0))]

def _indicator_line(body: str) -> Optional[tuple]:
    lines = find_product_lines(body)
    return lines[0].groups() if lines else None

def _labeled_part(body: str) -> Optional[tuple]:
    num = PART_NUMBER_LABEL.search(body)
    name = PRODUCT_LABEL.search(body)
    if not (num or name):
        return None
    return (num.group(1) if num else None, name.group(1) if name else None, '1')

PART_STRATEGIES = [
    ('indicator_line', _indicator_line),
    ('labeled', _labeled_part),
]

def parse_part_info(body: str) -> PartInfo:
    attempt = first_match(PART_STRATEGIES, body)
    if not attempt.matched:
        logger.debug("No product metadata recognized")
        return PartInfo()

    number, name, quantity = attempt.groups
    return PartInfo(
        part_number=number,
        part_name=name.strip() if name else None,
        quantity=int(quantity),
    )

def split_product_segments(body: str) -> list[str]:
    """One segment per product indicator line; leading text joins the first."""
    lines = find_product_lines(body)
    if len(lines) < 2:
        return [body]
    bounds = [m.start() for m in lines] + [len(body)]
    segments = [body[bounds[i]:bounds[i + 1]] for i in range(len(lines))]
    segments[0] = body[:bounds[0]] + segments[0]
    return segments

# ============================================================
# Validation Heuristic
# ============================================================

SIGNAL_PATTERNS = [
    ('site', re.compile(r'site', re.IGNORECASE)),
    ('host', re.compile(r'hostid|host|server', re.IGNORECASE)),
    ('license', re.compile(r'license|increment|feature', re.IGNORECASE)),
    ('vendor', re.compile(r'siemens|simatic', re.IGNORECASE)),
    ('date', re.compile(r'\d{2}-\w{3}-\d{4}|\d{4}-\d{2}-\d{2}')),
    ('serial', re.compile(r'\d{10}')),
]

def detect_signals(text: str) -> list[str]:
    return [name for name, pat in SIGNAL_PATTERNS if pat.search(text)]

# ============================================================
# Master Parser
# ============================================================

class LicenseParser:
    """Main parsing engine. Stateless between calls."""

    def __init__(self, date_policy: str = 'warn', min_length: int = 50,
                 min_signals: int = 1):
        self.date_policy = date_policy
        self.min_length = min_length
        self.min_signals = min_signals

    @classmethod
    def from_settings(cls, settings=None) -> LicenseParser:
        from config import get_settings
        s = settings or get_settings()
        return cls(date_policy=s.unparseable_date_policy,
                   min_length=s.validation_min_length,
                   min_signals=s.validation_min_signals)

    def parse(self, text: str, today: Optional[date] = None) -> ParsedLicense:
        """Raises MissingContentBlock; everything below it degrades to empty fields.

        The 'today' date policy requires ``today``; ValueError otherwise.
        """
        resolver = DateResolver(self.date_policy, today)
        text = normalize_newlines(text)
        site_info = parse_site_info(text)
        body = extract_content_block(text)

        products = []
        for segment in split_product_segments(body):
            products.append(ProductGroup(
                part_info=parse_part_info(segment),
                features=parse_features(segment, resolver),
            ))

        warnings: list[str] = []
        for p in products:
            for f in p.features:
                warnings.extend(f'{f.feature_name}: {w}' for w in f.warnings)
        if len(products) > 1:
            logger.info("Detected %d products in license body", len(products))

        return ParsedLicense(site_info=site_info, products=products, warnings=warnings)

    def validate(self, text: str) -> ValidationResult:
        """Lenient: any single signal is enough by default. Never raises."""
        if not text or not text.strip():
            return ValidationResult(is_valid=False, reasons=['file is empty'])

        reasons = []
        signals = detect_signals(text)
        if len(signals) < self.min_signals:
            reasons.append('no license-related content found '
                           f'({len(signals)} of {self.min_signals} required signals)')
        if len(text) < self.min_length:
            reasons.append(f'file is too short ({len(text)} < {self.min_length} characters)')

        return ValidationResult(is_valid=not reasons, reasons=reasons, signals=signals)


# ============================================================
# Convenience
# ============================================================

def parse_license(text: str, *, today: Optional[date] = None) -> ParsedLicense:
    return LicenseParser().parse(text, today=today)

def validate_license(text: str) -> ValidationResult:
    return LicenseParser().validate(text)
