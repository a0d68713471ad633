import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from occasion_notifier.matcher import EventMatcher
from occasion_notifier.models import TimeZoneSample


@dataclass
class FakeDirectory:
    users_by_zone: dict[str, list[dict]] = field(default_factory=dict)
    failing_zones: set[str] = field(default_factory=set)
    queried_zones: list[str] = field(default_factory=list)

    def users_in_zone(self, zone: str) -> list[dict]:
        self.queried_zones.append(zone)
        if zone in self.failing_zones:
            raise ConnectionError(f"lookup failed for {zone}")
        return list(self.users_by_zone.get(zone, []))

    def get_user(self, user_id: str) -> dict | None:
        for items in self.users_by_zone.values():
            for item in items:
                if item.get("userId") == user_id:
                    return item
        return None


def _sample(zone: str, now_utc: datetime) -> TimeZoneSample:
    return TimeZoneSample(zone=zone, local_time=now_utc, utc_offset_label="")


def _user(user_id: str, zone: str, birthday: str | None, **extra: str) -> dict:
    item = {"userId": user_id, "firstName": "First", "lastName": "Last", "timezone": zone}
    if birthday is not None:
        item["birthday"] = birthday
    item.update(extra)
    return item


NOW = datetime(2026, 1, 20, 9, 0, tzinfo=timezone.utc)


def test_match_includes_user_whose_birthday_is_today() -> None:
    directory = FakeDirectory(users_by_zone={"UTC": [_user("u1", "UTC", "--01-20")]})
    matcher = EventMatcher(directory)

    result = asyncio.run(matcher.match([_sample("UTC", NOW)], "birthday", now_utc=NOW))

    assert [(m.record.user_id, m.year) for m in result.matches] == [("u1", 2026)]
    assert result.complete is True


def test_match_excludes_user_with_other_date() -> None:
    directory = FakeDirectory(
        users_by_zone={"UTC": [_user("u1", "UTC", "2000-01-21"), _user("u2", "UTC", "2000-02-20")]}
    )
    result = asyncio.run(EventMatcher(directory).match([_sample("UTC", NOW)], "birthday", now_utc=NOW))

    assert result.matches == []


def test_match_queries_only_sampled_zones() -> None:
    directory = FakeDirectory(
        users_by_zone={
            "UTC": [_user("u1", "UTC", "--01-20")],
            "Asia/Tokyo": [_user("u2", "Asia/Tokyo", "--01-20")],
        }
    )
    result = asyncio.run(EventMatcher(directory).match([_sample("UTC", NOW)], "birthday", now_utc=NOW))

    assert directory.queried_zones == ["UTC"]
    assert [m.record.user_id for m in result.matches] == ["u1"]


def test_match_uses_event_date_for_event_type() -> None:
    directory = FakeDirectory(
        users_by_zone={
            "UTC": [
                _user("u1", "UTC", "--05-05", anniversary="2015-01-20"),
                _user("u2", "UTC", "--01-20"),
            ]
        }
    )
    result = asyncio.run(EventMatcher(directory).match([_sample("UTC", NOW)], "anniversary", now_utc=NOW))

    assert [m.record.user_id for m in result.matches] == ["u1"]


def test_match_skips_malformed_records_without_aborting() -> None:
    directory = FakeDirectory(
        users_by_zone={
            "UTC": [
                _user("bad-date", "UTC", "not-a-date"),
                _user("no-date", "UTC", None),
                {"userId": "no-zone", "birthday": "--01-20"},
                _user("bad-zone", "Mars/Olympus_Mons", "--01-20"),
                _user("u1", "UTC", "--01-20"),
            ]
        }
    )
    result = asyncio.run(EventMatcher(directory).match([_sample("UTC", NOW)], "birthday", now_utc=NOW))

    assert [m.record.user_id for m in result.matches] == ["u1"]


def test_match_deduplicates_users_across_results() -> None:
    duplicate = _user("u1", "UTC", "--01-20")
    directory = FakeDirectory(users_by_zone={"UTC": [duplicate, dict(duplicate)]})
    result = asyncio.run(EventMatcher(directory).match([_sample("UTC", NOW)], "birthday", now_utc=NOW))

    assert len(result.matches) == 1


def test_match_reports_failed_zones_separately() -> None:
    directory = FakeDirectory(
        users_by_zone={"UTC": [_user("u1", "UTC", "--01-20")]},
        failing_zones={"Europe/London"},
    )
    samples = [_sample("UTC", NOW), _sample("Europe/London", NOW)]
    result = asyncio.run(EventMatcher(directory).match(samples, "birthday", now_utc=NOW))

    assert [m.record.user_id for m in result.matches] == ["u1"]
    assert set(result.failed_zones) == {"Europe/London"}
    assert isinstance(result.failed_zones["Europe/London"], ConnectionError)
    assert result.complete is False


def test_match_uses_local_year_in_users_zone() -> None:
    now_utc = datetime(2026, 12, 31, 19, 0, tzinfo=timezone.utc)
    directory = FakeDirectory(
        users_by_zone={"Pacific/Kiritimati": [_user("u1", "Pacific/Kiritimati", "1999-01-01")]}
    )
    result = asyncio.run(
        EventMatcher(directory).match([_sample("Pacific/Kiritimati", now_utc)], "birthday", now_utc=now_utc)
    )

    assert [(m.record.user_id, m.year) for m in result.matches] == [("u1", 2027)]


def test_match_with_no_samples_does_no_lookups() -> None:
    directory = FakeDirectory()
    result = asyncio.run(EventMatcher(directory).match([], "birthday", now_utc=NOW))

    assert result.matches == []
    assert directory.queried_zones == []


@dataclass
class RendezvousDirectory(FakeDirectory):
    barrier: threading.Barrier | None = None

    def users_in_zone(self, zone: str) -> list[dict]:
        # Every zone's lookup must be in flight at once for the barrier to open.
        self.barrier.wait()
        return super().users_in_zone(zone)


def test_match_looks_up_zones_concurrently() -> None:
    zones = ["UTC", "Europe/London", "Africa/Abidjan"]
    directory = RendezvousDirectory(
        users_by_zone={zone: [_user(f"u-{zone}", zone, "--01-20")] for zone in zones},
        barrier=threading.Barrier(len(zones), timeout=5),
    )
    samples = [_sample(zone, NOW) for zone in zones]

    result = asyncio.run(EventMatcher(directory).match(samples, "birthday", now_utc=NOW))

    assert result.complete is True
    assert sorted(m.record.user_id for m in result.matches) == sorted(f"u-{zone}" for zone in zones)
