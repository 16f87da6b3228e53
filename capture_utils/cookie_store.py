import logging
from typing import Dict, Iterable, List

from capture_utils.cookie_utils import (
    EXPIRY_FIELDS,
    MERGEABLE_FIELDS,
    CookieObservation,
    CookieRecord,
    ObservationSource,
)

logger = logging.getLogger(__name__)


class CookieStore:
    """
    Run-scoped accumulator of cookie observations, one record per (domain, name).

    Request headers arrive first with only a value, Set-Cookie headers carry the
    authoritative expiry, and store snapshots backfill whatever neither stream saw.
    Merging only ever fills undefined fields, so the arrival order of request and
    response observations does not matter. Snapshots never touch a record that
    already has expiration data.
    """

    def __init__(self):
        # dicts keep insertion order, which is the report order
        self._records: Dict[tuple, CookieRecord] = {}
        # key -> source that supplied the record's current expiry
        self._expiry_sources: Dict[tuple, ObservationSource] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key) -> bool:
        return key in self._records

    def merge(self, observation: CookieObservation) -> None:
        key = observation.key
        existing = self._records.get(key)

        if existing is None:
            self._records[key] = CookieRecord.from_observation(observation)
            if observation.has_expiry:
                self._expiry_sources[key] = observation.source
            return

        if observation.source == ObservationSource.SNAPSHOT and existing.has_expiry:
            logger.debug(f"Keeping known expiry for {key}, snapshot ignored")
            return

        for name in MERGEABLE_FIELDS:
            incoming = getattr(observation, name)
            if incoming is not None and getattr(existing, name) is None:
                setattr(existing, name, incoming)

        if observation.has_expiry and self._takes_expiry(key, existing, observation):
            for name in EXPIRY_FIELDS:
                setattr(existing, name, getattr(observation, name))
            self._expiry_sources[key] = observation.source

        if observation.source not in existing.sources:
            existing.sources.append(observation.source)

    def merge_many(self, observations: Iterable[CookieObservation]) -> int:
        count = 0
        for observation in observations:
            self.merge(observation)
            count += 1
        return count

    def snapshot_all(self) -> List[CookieRecord]:
        """Copies of every record in first-insertion order."""
        return [record.copy() for record in self._records.values()]

    def _takes_expiry(self, key: tuple, existing: CookieRecord, observation: CookieObservation) -> bool:
        if not existing.has_expiry:
            return True
        # Set-Cookie is authoritative over expiry learned only from a snapshot
        return (observation.source == ObservationSource.RESPONSE
                and self._expiry_sources.get(key) == ObservationSource.SNAPSHOT)
