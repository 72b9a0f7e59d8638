from datetime import datetime, timezone

from browser_control.models.session import CapturedCredential, PersistedSessionRecord


async def test_record_is_written_once(repo):
    first = PersistedSessionRecord(
        session_token="tok", campaign_id="camp-1", created_at=datetime(2026, 1, 1, tzinfo=timezone.utc)
    )
    second = PersistedSessionRecord(
        session_token="tok", campaign_id="camp-2", created_at=datetime(2026, 2, 1, tzinfo=timezone.utc)
    )

    assert await repo.save_record(first) is True
    assert await repo.save_record(second) is False

    stored = await repo.get_record("tok")
    assert stored.campaign_id == "camp-1"
    assert stored.created_at == first.created_at


async def test_missing_record(repo):
    assert await repo.get_record("nope") is None


async def test_credentials_round_trip_in_order(repo):
    for n in range(2):
        await repo.save_credential(
            CapturedCredential(
                session_token="tok",
                campaign_id="camp",
                email_or_username=f"user{n}@example.com",
                password=f"pw{n}",
                source_url="https://accounts.target.test/",
                capture_method="network",
            )
        )

    stored = await repo.list_credentials("tok")
    assert [c.email_or_username for c in stored] == ["user0@example.com", "user1@example.com"]
    assert await repo.list_credentials("other") == []


async def test_list_records_newest_first_and_by_campaign(repo):
    for n, campaign in enumerate(["camp-a", "camp-b", "camp-a"]):
        await repo.save_record(
            PersistedSessionRecord(
                session_token=f"tok-{n}",
                campaign_id=campaign,
                created_at=datetime(2026, 1, n + 1, tzinfo=timezone.utc),
            )
        )

    assert [r.session_token for r in await repo.list_records()] == ["tok-2", "tok-1", "tok-0"]
    assert [r.session_token for r in await repo.list_records("camp-a")] == ["tok-2", "tok-0"]
    assert await repo.list_records("camp-z") == []
