"""
Tests for BookingEngine

Test Coverage:
1. Happy path with totals and order creation
2. Seat hold conflicts between sessions
3. Seat hold, review and payment timeouts with seat release
4. Payment retry loop (approve on third try, exhaustion)
5. Terminal and wrong-phase rejections
6. Late gateway results and concurrent submissions
7. Recovery after restart
8. Store and inventory failures while timing out, confirming and releasing
"""

import asyncio
from datetime import timedelta

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from skybooker.domain import FailureReason, PaymentOutcome, Phase, SeatStatus
from skybooker.exceptions import (
    FlightNotFound,
    InvalidFormat,
    InvalidTransition,
    NoSeatsHeld,
    PaymentInProgress,
    SeatConflict,
    SeatNotFound,
    SessionNotFound,
    SessionTerminal,
)

from .helpers import ScriptedGateway, ShiftedClock


FLIGHT = "FL001"


async def to_payment(h, seats=("12A", "12B")):
    snapshot = await h.engine.create_session(FLIGHT)
    sid = snapshot.session_id
    await h.engine.hold_seats(sid, list(seats))
    await h.engine.confirm_seats(sid)
    await h.engine.confirm_review(sid)
    return sid


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_round_trip_confirms_with_total_and_order_id(self, harness):
        created = await harness.engine.create_session(FLIGHT)
        sid = created.session_id
        assert created.phase is Phase.SEAT_HOLD
        assert created.deadline is None

        held = await harness.engine.hold_seats(sid, ["1A", "12C"])
        assert [s.id for s in held.held_seats] == ["1A", "12C"]
        await harness.assert_holds_match(sid)

        review = await harness.engine.confirm_seats(sid)
        assert review.phase is Phase.REVIEW
        assert review.remaining_seconds == pytest.approx(60, abs=2)
        await harness.assert_holds_match(sid)

        payment = await harness.engine.confirm_review(sid)
        assert payment.phase is Phase.PAYMENT
        await harness.assert_holds_match(sid)

        result = await harness.engine.submit_payment_code(sid, "12345")

        assert result.outcome is PaymentOutcome.APPROVED
        session = result.session
        assert session.phase is Phase.CONFIRMED
        assert session.order_id and session.order_id.startswith("CF")
        assert len(session.order_id) == 10
        # flight 599 + business 150 + economy 50
        assert session.total_price == 799
        assert session.remaining_seconds is None
        assert [a.outcome for a in session.attempts] == [PaymentOutcome.APPROVED]

        order = await harness.engine.get_order(session.order_id)
        assert order.total_price == 799
        assert [s.id for s in order.seats] == ["1A", "12C"]
        states = {s.seat.id: s for s in await harness.inventory.seat_map(FLIGHT)}
        assert states["1A"].status == "sold"
        assert harness.timers.get(sid) is None

    @pytest.mark.asyncio
    async def test_unknown_flight(self, harness):
        with pytest.raises(FlightNotFound):
            await harness.engine.create_session("FL999")

    @pytest.mark.asyncio
    async def test_unknown_session(self, harness):
        with pytest.raises(SessionNotFound):
            await harness.engine.get_session("nope")

    @pytest.mark.asyncio
    async def test_hold_arms_timer_and_rearms_on_change(self, harness):
        sid = (await harness.engine.create_session(FLIGHT)).session_id
        assert harness.timers.get(sid) is None

        first = await harness.engine.hold_seats(sid, ["3A"])
        first_deadline = first.deadline
        await asyncio.sleep(0.01)
        second = await harness.engine.hold_seats(sid, ["3B"])

        assert second.deadline > first_deadline
        assert harness.timers.get(sid).deadline == second.deadline
        assert [s.id for s in second.held_seats] == ["3A", "3B"]
        await harness.assert_holds_match(sid)

        unchanged = await harness.engine.hold_seats(sid, ["3A"])
        assert unchanged.deadline == second.deadline

    @pytest.mark.asyncio
    async def test_release_seats(self, harness):
        sid = (await harness.engine.create_session(FLIGHT)).session_id
        await harness.engine.hold_seats(sid, ["4A", "4B"])

        snapshot = await harness.engine.release_seats(sid, ["4A", "20F"])

        assert [s.id for s in snapshot.held_seats] == ["4B"]
        await harness.assert_holds_match(sid)
        assert "4A" in {s.id for s in await harness.inventory.list_available(FLIGHT)}


class TestSeatHold:
    @pytest.mark.asyncio
    async def test_conflict_leaves_previous_holds_intact(self, harness):
        s1 = (await harness.engine.create_session(FLIGHT)).session_id
        s2 = (await harness.engine.create_session(FLIGHT)).session_id
        await harness.engine.hold_seats(s1, ["5A"])
        await harness.engine.hold_seats(s2, ["5C"])

        with pytest.raises(SeatConflict) as exc_info:
            await harness.engine.hold_seats(s2, ["5A", "5B"])

        assert exc_info.value.unavailable == ["5A"]
        snapshot = await harness.engine.get_session(s2)
        assert snapshot.phase is Phase.SEAT_HOLD
        assert [s.id for s in snapshot.held_seats] == ["5C"]
        await harness.assert_holds_match(s1)
        await harness.assert_holds_match(s2)

    @pytest.mark.asyncio
    async def test_concurrent_sessions_racing_for_one_seat(self, harness):
        s1 = (await harness.engine.create_session(FLIGHT)).session_id
        s2 = (await harness.engine.create_session(FLIGHT)).session_id

        results = await asyncio.gather(
            harness.engine.hold_seats(s1, ["6D"]),
            harness.engine.hold_seats(s2, ["6D"]),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, SeatConflict)]
        assert len(conflicts) == 1
        assert conflicts[0].unavailable == ["6D"]
        assert len([r for r in results if not isinstance(r, Exception)]) == 1
        await harness.assert_holds_match(s1)
        await harness.assert_holds_match(s2)

    @pytest.mark.asyncio
    async def test_unknown_seat(self, harness):
        sid = (await harness.engine.create_session(FLIGHT)).session_id

        with pytest.raises(SeatNotFound):
            await harness.engine.hold_seats(sid, ["0Z"])

    @pytest.mark.asyncio
    async def test_confirm_without_seats(self, harness):
        sid = (await harness.engine.create_session(FLIGHT)).session_id

        with pytest.raises(NoSeatsHeld):
            await harness.engine.confirm_seats(sid)

    @pytest.mark.asyncio
    async def test_back_to_seats_releases_holds(self, harness):
        sid = (await harness.engine.create_session(FLIGHT)).session_id
        await harness.engine.hold_seats(sid, ["7A", "7B"])
        await harness.engine.confirm_seats(sid)

        snapshot = await harness.engine.back_to_seats(sid)

        assert snapshot.phase is Phase.SEAT_HOLD
        assert snapshot.held_seats == []
        assert snapshot.deadline is not None
        assert await harness.inventory.held_by(FLIGHT, sid) == []
        assert harness.timers.get(sid).deadline == snapshot.deadline

    @pytest.mark.asyncio
    async def test_wrong_phase_is_rejected(self, harness):
        sid = (await harness.engine.create_session(FLIGHT)).session_id

        with pytest.raises(InvalidTransition):
            await harness.engine.confirm_review(sid)
        with pytest.raises(InvalidTransition):
            await harness.engine.submit_payment_code(sid, "12345")

        await harness.engine.hold_seats(sid, ["8A"])
        await harness.engine.confirm_seats(sid)
        with pytest.raises(InvalidTransition):
            await harness.engine.hold_seats(sid, ["8B"])


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_idle_seat_hold_expires_and_frees_seats(self, harness_factory):
        h = await harness_factory(SEAT_HOLD_TIMEOUT_SECONDS=0.2)
        sid = (await h.engine.create_session(FLIGHT)).session_id
        await h.engine.hold_seats(sid, ["9A", "9B"])

        await h.wait_for_phase(sid, Phase.EXPIRED)

        snapshot = await h.engine.get_session(sid)
        assert snapshot.failure_reason is FailureReason.SEAT_HOLD_TIMEOUT
        assert snapshot.failure_message
        available = {s.id for s in await h.inventory.list_available(FLIGHT)}
        assert {"9A", "9B"} <= available

    @pytest.mark.asyncio
    async def test_review_timeout_expires(self, harness_factory):
        h = await harness_factory(REVIEW_TIMEOUT_SECONDS=0.2)
        sid = (await h.engine.create_session(FLIGHT)).session_id
        await h.engine.hold_seats(sid, ["10A"])
        await h.engine.confirm_seats(sid)

        await h.wait_for_phase(sid, Phase.EXPIRED)

        assert (await h.engine.get_session(sid)).failure_reason is FailureReason.REVIEW_TIMEOUT
        assert await h.inventory.held_by(FLIGHT, sid) == []

    @pytest.mark.asyncio
    async def test_payment_timeout_fails_and_releases(self, harness_factory):
        h = await harness_factory(PAYMENT_VALIDATION_TIMEOUT_SECONDS=0.2)
        sid = await to_payment(h)

        await h.wait_for_phase(sid, Phase.FAILED)

        snapshot = await h.engine.get_session(sid)
        assert snapshot.failure_reason is FailureReason.PAYMENT_TIMEOUT
        assert await h.inventory.held_by(FLIGHT, sid) == []

    @pytest.mark.asyncio
    async def test_continuous_review_deadline_carries_over(self, harness_factory):
        h = await harness_factory(REVIEW_DEADLINE_MODE="continuous", REVIEW_TIMEOUT_SECONDS=600)
        sid = (await h.engine.create_session(FLIGHT)).session_id
        held = await h.engine.hold_seats(sid, ["11A"])

        review = await h.engine.confirm_seats(sid)

        assert review.deadline == held.deadline

    @pytest.mark.asyncio
    async def test_command_before_deadline_wins_over_timer(self, harness_factory):
        h = await harness_factory(SEAT_HOLD_TIMEOUT_SECONDS=0.3)
        sid = (await h.engine.create_session(FLIGHT)).session_id
        await h.engine.hold_seats(sid, ["13A"])

        await h.engine.confirm_seats(sid)
        await asyncio.sleep(0.5)

        # the seat-hold timer was superseded by the review timer
        assert await h.phase_of(sid) is Phase.REVIEW
        await h.assert_holds_match(sid)


class TestPaymentLoop:
    @pytest.mark.asyncio
    async def test_approved_on_third_attempt(self, harness_factory):
        h = await harness_factory(gateway=ScriptedGateway([False, False, True]))
        sid = await to_payment(h)

        first = await h.engine.submit_payment_code(sid, "11111")
        second = await h.engine.submit_payment_code(sid, "22222")
        third = await h.engine.submit_payment_code(sid, "33333")

        assert first.outcome is PaymentOutcome.DECLINED
        assert first.session.phase is Phase.PAYMENT
        assert first.session.attempts_remaining == 2
        assert second.outcome is PaymentOutcome.DECLINED
        assert third.outcome is PaymentOutcome.APPROVED
        assert third.session.phase is Phase.CONFIRMED
        assert [a.outcome for a in third.session.attempts] == [
            PaymentOutcome.DECLINED,
            PaymentOutcome.DECLINED,
            PaymentOutcome.APPROVED,
        ]

    @pytest.mark.asyncio
    async def test_always_declined_fails_after_three_attempts(self, harness_factory):
        gateway = ScriptedGateway([False])
        h = await harness_factory(gateway=gateway)
        sid = await to_payment(h, seats=("14A", "14B"))

        results = [await h.engine.submit_payment_code(sid, "12345") for _ in range(3)]

        assert [r.outcome for r in results] == [PaymentOutcome.DECLINED] * 3
        final = results[-1].session
        assert final.phase is Phase.FAILED
        assert final.failure_reason is FailureReason.RETRY_BUDGET_EXHAUSTED
        assert final.attempt_count == 3
        assert len(gateway.calls) == 3
        available = {s.id for s in await h.inventory.list_available(FLIGHT)}
        assert {"14A", "14B"} <= available
        with pytest.raises(SessionTerminal):
            await h.engine.submit_payment_code(sid, "12345")

    @pytest.mark.asyncio
    async def test_invalid_code_does_not_use_budget(self, harness):
        sid = await to_payment(harness)

        with pytest.raises(InvalidFormat):
            await harness.engine.submit_payment_code(sid, "1234")

        snapshot = await harness.engine.get_session(sid)
        assert snapshot.attempt_count == 0
        assert snapshot.phase is Phase.PAYMENT

    @pytest.mark.asyncio
    async def test_decline_rearms_validation_timer(self, harness_factory):
        h = await harness_factory(gateway=ScriptedGateway([False, True]))
        sid = await to_payment(h)
        before = (await h.engine.get_session(sid)).deadline

        await asyncio.sleep(0.01)
        result = await h.engine.submit_payment_code(sid, "12345")

        assert result.session.deadline > before
        assert h.timers.get(sid).deadline == result.session.deadline

    @pytest.mark.asyncio
    async def test_late_gateway_result_is_discarded(self, harness_factory):
        h = await harness_factory(
            gateway=ScriptedGateway([True], latency=0.5),
            PAYMENT_VALIDATION_TIMEOUT_SECONDS=0.1,
        )
        sid = await to_payment(h)

        result = await h.engine.submit_payment_code(sid, "12345")

        assert result.outcome is PaymentOutcome.TIMED_OUT
        assert result.session.phase is Phase.FAILED
        assert result.session.failure_reason is FailureReason.PAYMENT_TIMEOUT
        assert result.session.order_id is None
        assert [a.outcome for a in result.session.attempts] == [PaymentOutcome.TIMED_OUT]
        assert await h.inventory.held_by(FLIGHT, sid) == []

    @pytest.mark.asyncio
    async def test_second_code_while_first_is_validating(self, harness_factory):
        h = await harness_factory(gateway=ScriptedGateway([True], latency=0.2))
        sid = await to_payment(h)

        first = asyncio.create_task(h.engine.submit_payment_code(sid, "12345"))
        await asyncio.sleep(0.05)
        with pytest.raises(PaymentInProgress):
            await h.engine.submit_payment_code(sid, "54321")

        assert (await first).session.phase is Phase.CONFIRMED

    @pytest.mark.asyncio
    async def test_lost_hold_fails_instead_of_confirming(self, harness):
        sid = await to_payment(harness, seats=("15A",))
        await harness.redis.delete("seat:FL001:15A")

        result = await harness.engine.submit_payment_code(sid, "12345")

        assert result.session.phase is Phase.FAILED
        assert result.session.failure_reason is FailureReason.HOLD_LOST
        assert result.session.order_id is None


class TestTerminal:
    @pytest.mark.asyncio
    async def test_cancel_releases_and_is_absorbing(self, harness):
        sid = (await harness.engine.create_session(FLIGHT)).session_id
        await harness.engine.hold_seats(sid, ["16A"])

        snapshot = await harness.engine.cancel_session(sid)

        assert snapshot.phase is Phase.FAILED
        assert snapshot.failure_reason is FailureReason.CANCELLED
        assert await harness.inventory.held_by(FLIGHT, sid) == []
        for command in (
            lambda: harness.engine.hold_seats(sid, ["16B"]),
            lambda: harness.engine.confirm_seats(sid),
            lambda: harness.engine.back_to_seats(sid),
            lambda: harness.engine.cancel_session(sid),
        ):
            with pytest.raises(SessionTerminal):
                await command()


class TestRecovery:
    @pytest.mark.asyncio
    async def test_restart_rearms_remaining_time(self, harness_factory):
        server = fakeredis.FakeServer()
        first = await harness_factory(server=server, SEAT_HOLD_TIMEOUT_SECONDS=1.0)
        sid = (await first.engine.create_session(FLIGHT)).session_id
        await first.engine.hold_seats(sid, ["17A"])
        await first.engine.shutdown()

        second = await harness_factory(server=server, SEAT_HOLD_TIMEOUT_SECONDS=1.0)
        assert await second.engine.recover() == 1
        assert second.timers.get(sid).deadline == (await second.engine.get_session(sid)).deadline

        await second.wait_for_phase(sid, Phase.EXPIRED)
        assert await second.inventory.held_by(FLIGHT, sid) == []

    @pytest.mark.asyncio
    async def test_overdue_session_times_out_on_recovery(self, harness_factory):
        server = fakeredis.FakeServer()
        first = await harness_factory(server=server)
        sid = (await first.engine.create_session(FLIGHT)).session_id
        await first.engine.hold_seats(sid, ["18A"])
        await first.engine.shutdown()

        later = await harness_factory(server=server, clock=ShiftedClock(timedelta(hours=1)))
        await later.engine.recover()

        await later.wait_for_phase(sid, Phase.EXPIRED)
        assert await later.inventory.held_by(FLIGHT, sid) == []

    @pytest.mark.asyncio
    async def test_in_flight_attempt_is_recorded_as_timed_out(self, harness_factory):
        server = fakeredis.FakeServer()
        first = await harness_factory(server=server)
        sid = await to_payment(first)
        booking = await first.store.load(sid)
        first.tracker.prepare(booking, "12345")
        await first.store.save(booking)
        await first.engine.shutdown()

        second = await harness_factory(server=server)
        await second.engine.recover()

        snapshot = await second.engine.get_session(sid)
        assert snapshot.phase is Phase.PAYMENT
        assert snapshot.payment_pending is False
        assert snapshot.attempt_count == 1
        assert [a.outcome for a in snapshot.attempts] == [PaymentOutcome.TIMED_OUT]


class TestFailureHandling:
    @pytest.mark.asyncio
    async def test_timeout_is_retried_after_a_store_error(self, harness_factory, monkeypatch):
        h = await harness_factory(SEAT_HOLD_TIMEOUT_SECONDS=0.2)
        sid = (await h.engine.create_session(FLIGHT)).session_id
        await h.engine.hold_seats(sid, ["19A"])

        save = h.store.save
        failures = []

        async def flaky_save(booking):
            if not failures:
                failures.append(booking.id)
                raise ConnectionError("database went away")
            await save(booking)

        monkeypatch.setattr(h.store, "save", flaky_save)

        await h.wait_for_phase(sid, Phase.EXPIRED)

        assert failures == [sid]
        assert (await h.engine.get_session(sid)).failure_reason is FailureReason.SEAT_HOLD_TIMEOUT
        assert "19A" in {s.id for s in await h.inventory.list_available(FLIGHT)}
        assert h.timers.get(sid) is None

    @pytest.mark.asyncio
    async def test_unrecorded_order_fails_session_and_frees_seats(self, harness, monkeypatch):
        sid = await to_payment(harness, seats=("19C", "19D"))

        async def broken_save_with_order(booking, order):
            raise ConnectionError("database went away")

        monkeypatch.setattr(harness.store, "save_with_order", broken_save_with_order)

        result = await harness.engine.submit_payment_code(sid, "12345")

        session = result.session
        assert session.phase is Phase.FAILED
        assert session.failure_reason is FailureReason.CONFIRMATION_FAILED
        assert session.order_id is None
        assert session.payment_pending is False
        assert [a.outcome for a in session.attempts] == [PaymentOutcome.APPROVED]
        states = {s.seat.id: s.status for s in await harness.inventory.seat_map(FLIGHT)}
        assert states["19C"] is SeatStatus.FREE
        assert states["19D"] is SeatStatus.FREE
        assert harness.timers.get(sid) is None
        assert (await harness.engine.get_session(sid)).phase is Phase.FAILED

    @pytest.mark.asyncio
    async def test_failed_release_is_finished_in_background(self, harness, monkeypatch):
        sid = (await harness.engine.create_session(FLIGHT)).session_id
        await harness.engine.hold_seats(sid, ["20A", "20B"])

        release = harness.inventory.release
        calls = []

        async def flaky_release(flight_id, session_id, seat_ids):
            calls.append(list(seat_ids))
            if len(calls) <= 5:
                raise RedisConnectionError("redis went away")
            return await release(flight_id, session_id, seat_ids)

        monkeypatch.setattr(harness.inventory, "release", flaky_release)

        snapshot = await harness.engine.cancel_session(sid)

        assert snapshot.phase is Phase.FAILED
        assert len(calls) == harness.settings.COMPENSATION_MAX_RETRIES
        for _ in range(150):
            if {"20A", "20B"} <= {s.id for s in await harness.inventory.list_available(FLIGHT)}:
                break
            await asyncio.sleep(0.02)
        else:
            raise AssertionError("seats were never released")
        assert len(calls) == 6
        assert calls[-1] == ["20A", "20B"]
