from datetime import timedelta

from alarms.event import AlarmRole
from alarms.recurrence import RecurType, Recurrence, Repetition
from alarms.trigger import TriggerEvaluator, Verdict

from conftest import NOW, make_event


def test_overdue_alarm_without_late_cancel_is_due():
    event = make_event(-10)
    result = TriggerEvaluator(60).evaluate(event, NOW)
    assert result.due is not None
    assert result.due.role is AlarmRole.MAIN
    assert result.actions == []


def test_future_alarm_is_not_due():
    result = TriggerEvaluator(60).evaluate(make_event(10), NOW)
    assert result.due is None
    assert result.actions == []


def test_too_late_single_alarm_is_cancelled():
    event = make_event(-120, late_cancel=5)
    result = TriggerEvaluator(60).evaluate(event, NOW)
    assert result.due is None
    assert len(result.actions) == 1
    assert result.actions[0].verdict is Verdict.CANCEL
    assert result.actions[0].instance.role is AlarmRole.MAIN


def test_slightly_late_alarm_within_late_cancel_is_due():
    event = make_event(-3, late_cancel=5)
    result = TriggerEvaluator(60).evaluate(event, NOW)
    assert result.due is not None
    assert result.actions == []


def test_too_late_recurring_alarm_is_rescheduled():
    event = make_event(-120, late_cancel=5)
    event.recurrence = Recurrence.simple(RecurType.DAILY, 1, -1, event.start)
    result = TriggerEvaluator(60).evaluate(event, NOW)
    assert result.due is None
    assert [action.verdict for action in result.actions] == [Verdict.RESCHEDULE]


def test_login_alarm_ignored_straight_after_setup():
    event = make_event(60, repeat_at_login=True, at_login_time=NOW - timedelta(seconds=1))
    assert TriggerEvaluator(60).evaluate(event, NOW).due is None


def test_login_alarm_due_later_in_session():
    event = make_event(60, repeat_at_login=True, at_login_time=NOW - timedelta(minutes=10))
    result = TriggerEvaluator(60).evaluate(event, NOW)
    assert result.due is not None
    assert result.due.role is AlarmRole.REPEAT_AT_LOGIN
    assert result.due.when == NOW


def test_repetition_selects_latest_repeat():
    event = make_event(-35, repetition=Repetition(10, 5))
    result = TriggerEvaluator(60).evaluate(event, NOW)
    assert result.due.role is AlarmRole.MAIN
    assert result.due.when == NOW - timedelta(minutes=5)


def test_repetition_already_triggered_is_skipped():
    event = make_event(-35, repetition=Repetition(10, 5))
    event.last_triggered = NOW - timedelta(minutes=5)
    assert TriggerEvaluator(60).evaluate(event, NOW).due is None


def test_deferral_after_latest_repeat_supersedes_main_alarm():
    event = make_event(-35, repetition=Repetition(10, 5))
    event.defer(NOW - timedelta(minutes=2))
    result = TriggerEvaluator(60).evaluate(event, NOW)
    assert result.due.role is AlarmRole.DEFERRED


def test_deferral_before_latest_repeat_does_not_supersede():
    event = make_event(-35, repetition=Repetition(10, 5))
    event.defer(NOW - timedelta(minutes=10))
    result = TriggerEvaluator(60).evaluate(event, NOW)
    assert result.due.role is AlarmRole.MAIN


def test_reminder_due_before_main_alarm():
    event = make_event(10)
    event.set_reminder(15)
    result = TriggerEvaluator(60).evaluate(event, NOW)
    assert result.due.role is AlarmRole.REMINDER
    assert result.due.is_reminder


def _date_only_event(days_ago: int, late_cancel: int):
    event = make_event(date_only=True, late_cancel=late_cancel)
    event.start = NOW.replace(hour=0, minute=0) - timedelta(days=days_ago)
    return event


def test_date_only_alarm_within_late_cancel_days_is_due():
    assert TriggerEvaluator(60).evaluate(_date_only_event(0, 5), NOW).due is not None
    result = TriggerEvaluator(60).evaluate(_date_only_event(2, 2 * 1440), NOW)
    assert result.due is not None
    assert result.actions == []


def test_date_only_alarm_past_late_cancel_days_is_cancelled():
    result = TriggerEvaluator(60).evaluate(_date_only_event(2, 5), NOW)
    assert result.due is None
    assert [action.verdict for action in result.actions] == [Verdict.CANCEL]


def test_date_only_recurring_alarm_past_late_cancel_days_is_rescheduled():
    event = _date_only_event(2, 5)
    event.recurrence = Recurrence.simple(RecurType.WEEKLY, 1, -1, event.start)
    result = TriggerEvaluator(60).evaluate(event, NOW)
    assert result.due is None
    assert [action.verdict for action in result.actions] == [Verdict.RESCHEDULE]
