from datetime import datetime, timedelta, timezone

import pytest

from learnflow.core.exceptions import StoreUnavailableError, ValidationError
from learnflow.schemas.abuse import BlacklistType
from learnflow.services.abuse.guard import AbuseGuard, url_hash
from tests.factories import FakeClock, youtube_url

SUBJECT = "user-5"


@pytest.mark.unit
def test_url_hash_uses_video_id():
    assert url_hash("https://www.youtube.com/watch?v=dQw4w9WgXcQ") == url_hash("https://youtu.be/dQw4w9WgXcQ")
    assert url_hash("https://youtu.be/dQw4w9WgXcQ") != url_hash("https://youtu.be/9bZkp7q19f0")


@pytest.mark.db
class TestAbuseGuard:
    """Test blacklist and cooldown bookkeeping."""

    async def test_address_is_checked_before_account(self, guard: AbuseGuard):
        await guard.block(BlacklistType.IP, "10.0.0.1", reason="bot traffic")
        await guard.block(BlacklistType.USER, SUBJECT, reason="fraud")

        result = await guard.check_blocked("10.0.0.1", SUBJECT)

        assert result.blocked is True
        assert result.entry_type == BlacklistType.IP
        assert result.reason == "bot traffic"

    async def test_unlisted_caller_passes(self, guard: AbuseGuard):
        result = await guard.check_blocked("10.0.0.2", SUBJECT)

        assert result.blocked is False

    async def test_block_with_past_expiry_is_rejected(self, clock: FakeClock, guard: AbuseGuard):
        past = datetime.fromtimestamp(clock(), tz=timezone.utc) - timedelta(minutes=1)

        with pytest.raises(ValidationError):
            await guard.block(BlacklistType.IP, "10.0.0.1", expires_at=past)

    async def test_cooldown_counts_submissions(self, clock: FakeClock, guard: AbuseGuard):
        url = youtube_url()
        await guard.record_processing(SUBJECT, url)
        clock.advance(2 * 3600)
        await guard.record_processing(SUBJECT, url)

        clock.advance(30 * 60)
        result = await guard.check_cooldown(SUBJECT, url)

        assert result.allowed is False
        assert result.process_count == 2
        assert result.retry_after == 30 * 60

    async def test_cooldown_store_outage_fails_open(self, mocker, guard: AbuseGuard):
        mocker.patch.object(guard.store, "last_processing", side_effect=StoreUnavailableError("down"))

        result = await guard.check_cooldown(SUBJECT, youtube_url())

        assert result.allowed is True

    async def test_recording_failure_is_logged_not_raised(self, mocker, caplog, guard: AbuseGuard):
        mocker.patch.object(guard.store, "record_processing", side_effect=StoreUnavailableError("down"))

        await guard.record_processing(SUBJECT, youtube_url())

        assert "Failed to record video submission" in caplog.text
