from datetime import timedelta

from alarms.daemon import AlarmDaemon
from alarms.recurrence import RecurType, Recurrence, Repetition

from conftest import NOW, make_event


def _daemon(calendar, clock):
    notified = []
    daemon = AlarmDaemon(calendar, notify=notified.append, check_interval=60, clock=lambda: clock["now"])
    return daemon, notified


def test_due_alarm_notified_once(calendar):
    calendar.open()
    calendar.add(make_event(-1, id="al_due"))
    calendar.add(make_event(30, id="al_future"))
    daemon, notified = _daemon(calendar, {"now": NOW})
    assert daemon.check() == ["al_due"]
    assert daemon.check() == []
    assert notified == ["al_due"]


def test_future_alarm_notified_when_it_falls_due(calendar):
    calendar.open()
    calendar.add(make_event(30, id="al_later"))
    clock = {"now": NOW}
    daemon, notified = _daemon(calendar, clock)
    assert daemon.check() == []
    clock["now"] = NOW + timedelta(minutes=30)
    assert daemon.check() == ["al_later"]


def test_each_repetition_notified(calendar):
    calendar.open()
    calendar.add(make_event(-1, id="al_rep", repetition=Repetition(10, 3)))
    clock = {"now": NOW}
    daemon, notified = _daemon(calendar, clock)
    daemon.check()
    clock["now"] = NOW + timedelta(minutes=5)
    daemon.check()
    clock["now"] = NOW + timedelta(minutes=9)
    daemon.check()
    assert notified == ["al_rep", "al_rep"]


def test_handled_event_forgotten_once_deleted(calendar):
    calendar.open()
    event = make_event(-1, id="al_again")
    calendar.add(event)
    daemon, notified = _daemon(calendar, {"now": NOW})
    daemon.check()

    daemon.event_handled("al_again")
    assert daemon.check() == []

    calendar.delete(event)
    daemon.event_handled("al_again")
    calendar.add(event)
    assert daemon.check() == ["al_again"]


def test_queued_reset_prunes_vanished_events(calendar):
    calendar.open()
    event = make_event(-1, id="al_reset")
    calendar.add(event)
    daemon, notified = _daemon(calendar, {"now": NOW})
    daemon.check()
    calendar.delete(event)
    assert not daemon.reset_if_queued()
    daemon.queue_reset()
    assert daemon.reset_if_queued()
    calendar.add(event)
    assert daemon.check() == ["al_reset"]


def test_notify_failure_does_not_stop_check(calendar):
    calendar.open()
    calendar.add(make_event(-2, id="al_a"))
    calendar.add(make_event(-1, id="al_b"))

    def notify(event_id):
        if event_id == "al_a":
            raise RuntimeError("boom")

    daemon = AlarmDaemon(calendar, notify=notify, clock=lambda: NOW)
    assert daemon.check() == ["al_a", "al_b"]


def test_past_occurrences_of_recurring_event_forgotten(calendar):
    calendar.open()
    event = make_event(0, id="al_minutely")
    event.recurrence = Recurrence.simple(RecurType.MINUTELY, 1, -1, event.start)
    calendar.add(event)
    clock = {"now": NOW}
    daemon, notified = _daemon(calendar, clock)
    for minute in range(50):
        clock["now"] = NOW + timedelta(minutes=minute)
        assert daemon.check() == ["al_minutely"]
        stored = calendar.load_event("al_minutely")
        stored.set_next_occurrence(clock["now"])
        calendar.save(stored)
        daemon.event_handled("al_minutely")
    assert len(notified) == 50
    assert len(daemon._notified) <= 1
