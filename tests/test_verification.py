import threading
import time

import pytest

from measure_engine.errors import (
    ImmutableRecordError,
    InvalidTransition,
    RetakeLimitExceeded,
    SessionMismatch,
    SessionNotFound,
)
from measure_engine.models import VerificationState
from measure_engine.timers import ManualScheduler
from measure_engine.verification import SessionArena

from conftest import T0, make_frame, make_reconciled


def start(arena, reference, session_id="s1", user_id="u1"):
    return arena.start_session(user_id, reference, session_id=session_id)


def kinds(arena, session_id="s1"):
    return [event.kind for event in arena.events(session_id)]


def test_new_session_is_captured(arena, reference):
    session = start(arena, reference)
    assert session.state == VerificationState.CAPTURED
    assert kinds(arena) == ["captured"]
    assert arena.get("s1") is session


def test_unknown_session(arena):
    with pytest.raises(SessionNotFound):
        arena.get("missing")


def test_duplicate_session_id_is_refused(arena, reference):
    start(arena, reference)
    with pytest.raises(InvalidTransition):
        start(arena, reference)


def test_frames_only_join_their_own_session(arena, reference):
    start(arena, reference)
    arena.add_frame("s1", make_frame())
    with pytest.raises(SessionMismatch):
        arena.add_frame("s1", make_frame(user_id="intruder"))
    assert len(arena.get("s1").frames) == 1


def test_accurate_submission_waits_for_review_without_timer(arena, scheduler, reference):
    start(arena, reference)
    arena.submit_reconciled("s1", make_reconciled(accurate=True))

    assert arena.get("s1").state == VerificationState.PENDING_REVIEW
    assert not scheduler.is_scheduled("s1")
    assert scheduler.advance(1000) == []
    assert arena.get("s1").state == VerificationState.PENDING_REVIEW


def test_grace_period_proposes_retake(arena, scheduler, reference):
    start(arena, reference)
    arena.submit_reconciled("s1", make_reconciled(accurate=False))
    assert scheduler.is_scheduled("s1")

    assert scheduler.advance(119) == []
    assert not arena.get("s1").retake_proposed

    assert scheduler.advance(1) == ["s1"]
    session = arena.get("s1")
    assert session.retake_proposed
    assert session.state == VerificationState.PENDING_REVIEW
    assert kinds(arena)[-1] == "retake_proposed"

    arena.acknowledge_retake("s1")
    assert session.state == VerificationState.RETAKING
    assert not session.retake_proposed


def test_acknowledge_requires_proposal(arena, reference):
    start(arena, reference)
    arena.submit_reconciled("s1", make_reconciled(accurate=False))
    with pytest.raises(InvalidTransition):
        arena.acknowledge_retake("s1")


def test_accept_cancels_grace_timer(arena, scheduler, reference):
    start(arena, reference)
    arena.submit_reconciled("s1", make_reconciled(accurate=False))

    accepted = arena.accept("s1")

    assert accepted.verified_by_user
    assert not scheduler.is_scheduled("s1")
    assert scheduler.advance(500) == []
    assert arena.get("s1").state == VerificationState.ACCEPTED
    assert "retake_proposed" not in kinds(arena)


def test_accepted_session_is_immutable(arena, reference):
    start(arena, reference)
    arena.submit_reconciled("s1", make_reconciled())
    accepted = arena.accept("s1")

    with pytest.raises(ImmutableRecordError):
        arena.accept("s1")
    with pytest.raises(ImmutableRecordError):
        arena.reject("s1")
    with pytest.raises(ImmutableRecordError):
        arena.add_frame("s1", make_frame())
    with pytest.raises(ImmutableRecordError):
        accepted.revise(is_accurate=False)
    assert arena.get("s1").reconciled == accepted


def test_pending_review_only_leads_to_accept_or_retake(arena, reference):
    start(arena, reference)
    arena.submit_reconciled("s1", make_reconciled())

    with pytest.raises(InvalidTransition):
        arena.abandon("s1")
    with pytest.raises(InvalidTransition):
        arena.start_retake("s1")
    with pytest.raises(InvalidTransition):
        arena.add_frame("s1", make_frame())
    with pytest.raises(InvalidTransition):
        arena.submit_reconciled("s1", make_reconciled())

    arena.reject("s1")
    assert arena.get("s1").state == VerificationState.RETAKING


def test_captured_cannot_be_accepted(arena, reference):
    start(arena, reference)
    with pytest.raises(InvalidTransition):
        arena.accept("s1")


def test_reconciled_set_must_belong_to_session(arena, reference):
    start(arena, reference)
    with pytest.raises(SessionMismatch):
        arena.submit_reconciled("s1", make_reconciled(session_id="s2"))


def test_retake_opens_linked_session(arena, reference):
    start(arena, reference)
    arena.submit_reconciled("s1", make_reconciled())
    arena.reject("s1")

    new = arena.start_retake("s1")

    old = arena.get("s1")
    assert new.retake_count == 1
    assert new.previous_session_id == "s1"
    assert old.superseded_by == new.session_id
    assert old.is_terminal
    assert new.state == VerificationState.CAPTURED
    assert new.reference == reference
    with pytest.raises(InvalidTransition):
        arena.start_retake("s1")


def test_retake_limit_fails_session(scheduler, reference):
    arena = SessionArena(scheduler=scheduler, max_retakes=1, clock=lambda: T0)
    start(arena, reference)
    arena.submit_reconciled("s1", make_reconciled())
    arena.reject("s1")
    retake = arena.start_retake("s1")

    arena.submit_reconciled(retake.session_id, make_reconciled(session_id=retake.session_id))
    arena.reject(retake.session_id)
    with pytest.raises(RetakeLimitExceeded) as excinfo:
        arena.start_retake(retake.session_id)

    assert excinfo.value.retake_count == 1
    assert arena.get(retake.session_id).state == VerificationState.FAILED
    assert kinds(arena, retake.session_id)[-1] == "retake_limit_reached"


def test_abandon_from_retaking(arena, reference):
    start(arena, reference)
    arena.submit_reconciled("s1", make_reconciled())
    arena.reject("s1")
    arena.abandon("s1")
    assert arena.get("s1").state == VerificationState.ABANDONED
    assert arena.get("s1").is_terminal


def test_sessions_time_out_independently(arena, scheduler, reference):
    start(arena, reference, session_id="a")
    arena.submit_reconciled("a", make_reconciled(session_id="a", accurate=False))
    scheduler.advance(60)
    start(arena, reference, session_id="b")
    arena.submit_reconciled("b", make_reconciled(session_id="b", accurate=False))

    assert scheduler.advance(60) == ["a"]
    assert arena.get("a").retake_proposed
    assert not arena.get("b").retake_proposed
    assert scheduler.advance(60) == ["b"]


def test_listeners_receive_transitions(arena, reference):
    seen = []
    arena.subscribe(lambda event: seen.append((event.kind, event.to_state)))

    def broken(event):
        raise RuntimeError("listener down")

    arena.subscribe(broken)
    start(arena, reference)
    arena.submit_reconciled("s1", make_reconciled())
    arena.accept("s1")

    assert seen == [
        ("captured", VerificationState.CAPTURED),
        ("pending_review", VerificationState.PENDING_REVIEW),
        ("accepted", VerificationState.ACCEPTED),
    ]
    failures = arena.get("s1").listener_failures
    assert [f.kind for f in failures] == ["captured", "pending_review", "accepted"]
    assert failures[0].error == "RuntimeError: listener down"


def test_rejections_keep_session_captured(arena, reference):
    start(arena, reference)
    record = arena.record_rejection("s1", make_frame(), "MissingJoint", joint="left_wrist")

    session = arena.get("s1")
    assert session.state == VerificationState.CAPTURED
    assert session.rejections == [record]
    assert record.at == T0
    assert kinds(arena) == ["captured", "frame_rejected"]


def test_status_snapshot(arena, reference):
    start(arena, reference)
    arena.add_frame("s1", make_frame())
    status = arena.get("s1").status()
    assert status.frames == 1
    assert status.state == VerificationState.CAPTURED
    assert status.reconciled is None


def test_default_scheduler_is_manual():
    arena = SessionArena()
    assert isinstance(arena.scheduler, ManualScheduler)


def test_listener_failure_is_reported_on_status(arena, reference):
    def store(event):
        if event.kind == "accepted":
            raise OSError("disk full")

    arena.subscribe(store)
    start(arena, reference)
    arena.submit_reconciled("s1", make_reconciled())
    assert not arena.get("s1").listener_failed("pending_review")

    arena.accept("s1")

    session = arena.get("s1")
    assert session.state == VerificationState.ACCEPTED
    assert session.listener_failed("accepted")
    assert session.status().listener_failures[0].error == "OSError: disk full"
    assert session.status().listener_failures[0].at == T0


def test_concurrent_accept_and_reject_have_one_winner(arena, reference):
    def slow(event):
        if event.kind in ("accepted", "retaking"):
            time.sleep(0.05)

    arena.subscribe(slow)
    start(arena, reference)
    arena.submit_reconciled("s1", make_reconciled(accurate=False))

    barrier = threading.Barrier(2)
    outcomes = {}

    def run(name, action):
        barrier.wait()
        try:
            action("s1")
            outcomes[name] = "ok"
        except (InvalidTransition, ImmutableRecordError) as e:
            outcomes[name] = e

    threads = [threading.Thread(target=run, args=("accept", arena.accept)),
               threading.Thread(target=run, args=("reject", arena.reject))]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    winners = [name for name, outcome in outcomes.items() if outcome == "ok"]
    assert len(outcomes) == 2
    assert len(winners) == 1

    session = arena.get("s1")
    if winners == ["accept"]:
        assert isinstance(outcomes["reject"], ImmutableRecordError)
        assert session.state == VerificationState.ACCEPTED
        assert session.reconciled.verified_by_user
    else:
        assert isinstance(outcomes["accept"], InvalidTransition)
        assert session.state == VerificationState.RETAKING
        assert not session.reconciled.verified_by_user
    assert kinds(arena)[2:] in (["accepted"], ["retaking"])
