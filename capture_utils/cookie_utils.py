import logging
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

SAME_SITE_VALUES = ("Strict", "Lax", "None")


class MalformedCookie(ValueError):
    """A single cookie header segment or store entry could not be parsed."""


class ObservationSource(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    SNAPSHOT = "snapshot"


@dataclass
class CookieObservation:
    """One raw cookie datum from a single source event"""
    name: str
    domain: str
    source: ObservationSource
    value: Optional[str] = None
    path: Optional[str] = None
    expires: Optional[datetime] = None
    max_age: Optional[int] = None
    http_only: Optional[bool] = None
    secure: Optional[bool] = None
    same_site: Optional[str] = None
    url: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.domain, self.name)

    @property
    def has_expiry(self) -> bool:
        return self.expires is not None or self.max_age is not None


@dataclass
class CookieRecord:
    """Merged view of a cookie across every source, keyed by domain and name"""
    name: str
    domain: str
    value: Optional[str] = None
    path: Optional[str] = None
    expires: Optional[datetime] = None
    max_age: Optional[int] = None
    http_only: Optional[bool] = None
    secure: Optional[bool] = None
    same_site: Optional[str] = None
    url: Optional[str] = None
    sources: List[ObservationSource] = field(default_factory=list)

    @property
    def key(self) -> tuple:
        return (self.domain, self.name)

    @property
    def has_expiry(self) -> bool:
        return self.expires is not None or self.max_age is not None

    @classmethod
    def from_observation(cls, observation: CookieObservation) -> "CookieRecord":
        values = {f.name: getattr(observation, f.name) for f in fields(cls) if f.name != "sources"}
        return cls(**values, sources=[observation.source])

    def copy(self) -> "CookieRecord":
        return replace(self, sources=list(self.sources))


# Field names shared by observations and records, in serialisation order
MERGEABLE_FIELDS = ("value", "path", "http_only", "secure", "same_site", "url")
EXPIRY_FIELDS = ("expires", "max_age")


def format_timestamp(value: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision, e.g. 2024-01-01T00:00:00.000Z"""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def hostname_of(url: str) -> str:
    hostname = urlparse(url).hostname
    if not hostname:
        raise MalformedCookie(f"URL has no hostname: {url!r}")
    return hostname


def _normalize_same_site(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    for candidate in SAME_SITE_VALUES:
        if str(raw).strip().lower() == candidate.lower():
            return candidate
    logger.warning(f"Ignoring unknown SameSite value: {raw!r}")
    return None


def _parse_http_date(raw: str) -> Optional[datetime]:
    parsed = None
    # Netscape-style dates use dashes: Wed, 21-Oct-2015 07:28:00 GMT
    for candidate in (raw.strip(), raw.strip().replace("-", " ")):
        try:
            parsed = parsedate_to_datetime(candidate)
        except (TypeError, ValueError, IndexError):
            continue
        if parsed is not None:
            break
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError:
        return None


def parse_cookie_header(header: str, page_url: str) -> List[CookieObservation]:
    """
    Parse an outgoing ``Cookie`` request header into observations.

    Request headers carry no attributes, so the domain comes from the hostname of
    the requesting URL and every other field except the value is left undefined.
    Segments without ``=`` or with an empty name are skipped with a warning.
    """
    domain = hostname_of(page_url)
    observations = []
    for segment in header.split(";"):
        segment = segment.strip()
        if not segment:
            continue
        name, sep, value = segment.partition("=")
        name = name.strip()
        if not sep or not name:
            logger.warning(f"Skipping malformed cookie segment {segment!r} from {page_url}")
            continue
        observations.append(CookieObservation(
            name=name,
            value=value.strip(),
            domain=domain,
            url=page_url,
            source=ObservationSource.REQUEST,
        ))
    return observations


def parse_set_cookie(header: str, response_url: str, now: Optional[datetime] = None) -> CookieObservation:
    """
    Parse one ``Set-Cookie`` response header.

    ``Expires`` takes precedence over ``Max-Age``; when only ``Max-Age`` is given the
    expiry is computed from ``now``. Unparseable attribute values are treated as absent.

    Raises:
        MalformedCookie: if the header has no cookie name.
    """
    parts = header.split(";")
    name, _, value = parts[0].strip().partition("=")
    name = name.strip()
    if not name:
        raise MalformedCookie(f"Set-Cookie header has no cookie name: {header!r}")

    observation = CookieObservation(
        name=name,
        value=value.strip(),
        domain=hostname_of(response_url),
        url=response_url,
        source=ObservationSource.RESPONSE,
    )

    for part in parts[1:]:
        attr, _, attr_value = part.strip().partition("=")
        attr = attr.strip().lower()
        if attr == "expires":
            observation.expires = _parse_http_date(attr_value)
            if observation.expires is None:
                logger.warning(f"Ignoring unparseable Expires for cookie {name!r}: {attr_value!r}")
        elif attr == "max-age":
            try:
                observation.max_age = int(attr_value.strip())
            except ValueError:
                logger.warning(f"Ignoring unparseable Max-Age for cookie {name!r}: {attr_value!r}")
        elif attr == "path":
            observation.path = attr_value.strip() or None
        elif attr == "samesite":
            observation.same_site = _normalize_same_site(attr_value)
        elif attr == "secure":
            observation.secure = True
        elif attr == "httponly":
            observation.http_only = True

    if observation.expires is None and observation.max_age is not None:
        now = now or datetime.now(timezone.utc)
        try:
            observation.expires = now + timedelta(seconds=observation.max_age)
        except OverflowError:
            logger.warning(f"Ignoring out of range Max-Age for cookie {name!r}: {observation.max_age}")
            observation.max_age = None
    return observation


def split_set_cookie_headers(headers: List[Dict[str, str]]) -> List[str]:
    """Collect every Set-Cookie value from a Playwright ``headers_array()`` result."""
    values = []
    for header in headers:
        if header.get("name", "").lower() != "set-cookie":
            continue
        # Playwright may join repeated Set-Cookie headers with newlines
        values.extend(line.strip() for line in header.get("value", "").splitlines() if line.strip())
    return values


def normalize_snapshot_cookie(entry: Dict[str, Any]) -> CookieObservation:
    """
    Normalize one entry of ``BrowserContext.cookies()``.

    An ``expires`` of 0, -1 or missing marks a session cookie and maps to no
    expiration; a non-numeric value is malformed.
    """
    name = entry.get("name")
    domain = entry.get("domain")
    if not name or not domain:
        raise MalformedCookie(f"Cookie store entry is missing name or domain: {entry!r}")

    raw_expires = entry.get("expires")
    expires = None
    if raw_expires is not None:
        try:
            seconds = float(raw_expires)
        except (TypeError, ValueError):
            raise MalformedCookie(f"Cookie {name!r} has invalid expires: {raw_expires!r}")
        if seconds > 0:
            try:
                expires = datetime.fromtimestamp(seconds, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                raise MalformedCookie(f"Cookie {name!r} has out of range expires: {raw_expires!r}")

    return CookieObservation(
        name=name,
        value=entry.get("value"),
        domain=domain,
        path=entry.get("path"),
        expires=expires,
        http_only=entry.get("httpOnly"),
        secure=entry.get("secure"),
        same_site=_normalize_same_site(entry.get("sameSite")),
        url=f"https://{domain.lstrip('.')}",
        source=ObservationSource.SNAPSHOT,
    )


def normalize(source: ObservationSource, raw: Any, url: Optional[str] = None) -> List[CookieObservation]:
    """Dispatch a raw cookie datum to the parser for its source."""
    if source == ObservationSource.REQUEST:
        return parse_cookie_header(raw, url)
    if source == ObservationSource.RESPONSE:
        return [parse_set_cookie(raw, url)]
    if source == ObservationSource.SNAPSHOT:
        return [normalize_snapshot_cookie(raw)]
    raise ValueError(f"Unknown observation source: {source!r}")
