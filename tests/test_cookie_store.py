"""
Unit tests for the cookie merge store

Run with: pytest tests/
"""
from datetime import datetime, timezone

from capture_utils.cookie_store import CookieStore
from capture_utils.cookie_utils import (
    CookieObservation,
    ObservationSource,
    normalize_snapshot_cookie,
    parse_cookie_header,
    parse_set_cookie,
)

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
EXPIRY = datetime(2025, 1, 1, tzinfo=timezone.utc)


def record_for(store, domain, name):
    return next(record for record in store.snapshot_all() if record.key == (domain, name))


def request_obs(name="a", value="1", domain="x.com"):
    return CookieObservation(name=name, value=value, domain=domain, source=ObservationSource.REQUEST)


def response_obs(name="a", value="1", domain="x.com", expires=EXPIRY):
    return CookieObservation(name=name, value=value, domain=domain, expires=expires,
                             source=ObservationSource.RESPONSE)


def snapshot_obs(name="a", value="1", domain="x.com", expires=None, **extra):
    return CookieObservation(name=name, value=value, domain=domain, expires=expires,
                             source=ObservationSource.SNAPSHOT, **extra)


class TestCookieStoreMerge:
    """Test conflict resolution between request, response and snapshot observations"""

    def test_one_record_per_key(self):
        store = CookieStore()
        store.merge(request_obs())
        store.merge(request_obs())
        store.merge(request_obs(domain=".x.com"))

        assert len(store) == 2
        assert ("x.com", "a") in store
        assert (".x.com", "a") in store

    def test_expiry_request_then_response(self):
        """Test that expiry learned after a bare request observation is kept"""
        store = CookieStore()
        store.merge(request_obs())
        store.merge(response_obs())

        assert record_for(store, "x.com", "a").expires == EXPIRY

    def test_expiry_response_then_request(self):
        """Test that a later observation without expiry never clears it"""
        store = CookieStore()
        store.merge(response_obs())
        store.merge(request_obs())

        assert record_for(store, "x.com", "a").expires == EXPIRY

    def test_defined_value_not_overwritten(self):
        store = CookieStore()
        store.merge(request_obs(value="first"))
        store.merge(response_obs(value="second"))

        assert record_for(store, "x.com", "a").value == "first"

    def test_snapshot_never_overwrites_set_cookie_expiry(self):
        """Test first-writer-wins for expiry against a later snapshot"""
        store = CookieStore()
        store.merge(response_obs())
        store.merge(snapshot_obs(expires=datetime(2030, 1, 1, tzinfo=timezone.utc), path="/", secure=True))

        record = record_for(store, "x.com", "a")
        assert record.expires == EXPIRY
        assert record.path is None
        assert record.sources == [ObservationSource.RESPONSE]

    def test_snapshot_backfills_missing_fields(self):
        store = CookieStore()
        store.merge(request_obs())
        store.merge(snapshot_obs(expires=EXPIRY, path="/", secure=True, http_only=False, same_site="Lax"))

        record = record_for(store, "x.com", "a")
        assert record.expires == EXPIRY
        assert record.path == "/"
        assert record.secure is True
        assert record.http_only is False
        assert record.same_site == "Lax"
        assert record.sources == [ObservationSource.REQUEST, ObservationSource.SNAPSHOT]

    def test_set_cookie_replaces_snapshot_expiry(self):
        store = CookieStore()
        store.merge(snapshot_obs(expires=datetime(2030, 1, 1, tzinfo=timezone.utc)))
        store.merge(response_obs())

        assert record_for(store, "x.com", "a").expires == EXPIRY

    def test_first_set_cookie_expiry_wins(self):
        store = CookieStore()
        store.merge(response_obs())
        store.merge(response_obs(expires=datetime(2030, 1, 1, tzinfo=timezone.utc)))

        assert record_for(store, "x.com", "a").expires == EXPIRY

    def test_merge_many_counts(self):
        store = CookieStore()

        assert store.merge_many([request_obs("a"), request_obs("b"), request_obs("a")]) == 3
        assert len(store) == 2


class TestCookieStoreSnapshot:
    """Test read access used by the report builder"""

    def test_insertion_order(self):
        store = CookieStore()
        for name in ["z", "a", "m"]:
            store.merge(request_obs(name))
        store.merge(response_obs("a"))

        assert [record.name for record in store.snapshot_all()] == ["z", "a", "m"]

    def test_snapshot_is_a_copy(self):
        store = CookieStore()
        store.merge(request_obs())
        records = store.snapshot_all()
        records[0].value = "changed"
        records[0].sources.append(ObservationSource.SNAPSHOT)

        assert record_for(store, "x.com", "a").value == "1"
        assert record_for(store, "x.com", "a").sources == [ObservationSource.REQUEST]


class TestScenario:
    """End-to-end scenario across all three sources on host x.com"""

    def test_header_set_cookie_and_session_snapshot(self):
        store = CookieStore()
        store.merge_many(parse_cookie_header("a=1; b=2", "https://x.com/"))
        store.merge(parse_set_cookie("s=tok; Max-Age=3600", "https://x.com/auth", now=NOW))
        store.merge(normalize_snapshot_cookie({"name": "a", "value": "1", "domain": "x.com", "expires": 0}))

        assert len(store) == 3
        session = record_for(store, "x.com", "a")
        assert session.value == "1"
        assert session.expires is None
        token = record_for(store, "x.com", "s")
        assert token.value == "tok"
        assert (token.expires - NOW).total_seconds() == 3600
        assert record_for(store, "x.com", "b").expires is None
