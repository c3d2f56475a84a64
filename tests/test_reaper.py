from decimal import Decimal

from billing.fast_ledger import ACTIVE_SESSIONS_KEY, CacheKeys


def test_silent_session_is_settled_up_to_its_last_heartbeat(service, seeded, fast_ledger, clock):
    service.start_session("user-1", "vid-1")
    service.charge_for_request("user-1")
    service.charge_for_request("user-1")
    clock.advance(50)
    service.update_heartbeat("user-1", "vid-1")
    clock.advance(200)

    reclaimed = service.reaper.sweep_once()

    assert list(reclaimed) == ["user-1"]
    result = reclaimed["user-1"]
    assert result.success
    assert result.amount_settled == Decimal("0.0004")
    assert result.watch_time_settled == Decimal("50")
    assert fast_ledger.get_session("user-1") is None
    assert fast_ledger.active_users() == []
    assert seeded.read_balance("user-1") == Decimal("0.9996")
    assert seeded.get_creator("creator-1")["watch_time_seconds"] == Decimal("50")


def test_live_session_is_left_alone(service, fast_ledger, clock):
    service.start_session("user-1", "vid-1")
    clock.advance(60)

    assert service.reaper.sweep_once() == {}
    assert fast_ledger.get_session("user-1") is not None


def test_reclaimed_session_stops_its_settlement_timer(service, clock):
    service.start_session("user-1", "vid-1")
    assert service.scheduler.scheduled() == ["user-1"]
    clock.advance(500)

    service.reaper.sweep_once()

    assert service.scheduler.scheduled() == []


def test_orphaned_active_entries_are_dropped(service, fast_ledger, fake_redis):
    fake_redis.sadd(ACTIVE_SESSIONS_KEY, "user-gone")

    assert service.reaper.sweep_once() == {}
    assert fast_ledger.active_users() == []


def test_unsettled_users_are_retried(service, seeded, fast_ledger):
    fast_ledger.increment_pending("user-1", 200)
    fast_ledger.add_watch_time("creator-1", 3_000)
    fast_ledger.mark_unsettled("user-1", "creator-1")

    service.reaper.sweep_once()

    assert fast_ledger.get_unsettled("user-1") == []
    assert fast_ledger.get_pending("user-1") == 0
    assert seeded.read_balance("user-1") == Decimal("0.9998")
    assert seeded.get_creator("creator-1")["watch_time_seconds"] == Decimal("3")


def test_unsettled_retry_waits_for_a_live_session(service, fast_ledger):
    service.start_session("user-1", "vid-1")
    fast_ledger.mark_unsettled("user-1", "creator-2")

    service.reaper.sweep_once()

    assert fast_ledger.get_unsettled("user-1") == ["creator-2"]


def test_background_loop_starts_and_stops(service):
    service.reaper.interval_seconds = 1
    service.reaper.start()
    assert service.reaper._thread is not None

    service.reaper.stop()
    assert service.reaper._thread is None


def test_consecutive_failed_ends_are_all_retried(service, seeded, fast_ledger, fake_redis, clock):
    blocker = fake_redis.lock(CacheKeys.user_settle_lock("user-1"), blocking_timeout=1)
    assert blocker.acquire()
    try:
        service.start_session("user-1", "vid-1")
        service.charge_for_request("user-1")
        clock.advance(60)
        assert not service.end_session("user-1").success

        service.start_session("user-1", "vid-2")
        clock.advance(30)
        assert not service.end_session("user-1").success
    finally:
        blocker.release()

    assert fast_ledger.get_unsettled("user-1") == ["creator-1", "creator-2"]

    service.reaper.sweep_once()

    assert fast_ledger.get_unsettled("user-1") == []
    assert fast_ledger.unsettled() == {}
    assert fast_ledger.get_watch_time("creator-1") == 0
    assert fast_ledger.get_watch_time("creator-2") == 0
    assert seeded.read_balance("user-1") == Decimal("0.9998")
    assert seeded.get_creator("creator-1")["watch_time_seconds"] == Decimal("60")
    assert seeded.get_creator("creator-2")["watch_time_seconds"] == Decimal("30")
