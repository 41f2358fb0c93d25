from alarms.dispatch_loop import Continuation, DispatchLoop, EventFunction, QueueEntry


def test_entries_processed_in_order():
    seen = []
    loop = DispatchLoop(lambda entry: seen.append(entry.event_id))
    for event_id in ("a", "b", "c"):
        loop.post(QueueEntry(EventFunction.HANDLE, event_id=event_id))
    assert loop.drain()
    assert seen == ["a", "b", "c"]
    assert loop.pending_count() == 0


def test_work_posted_during_drain_runs_in_same_pass():
    seen = []
    loop = DispatchLoop(None)

    def process(entry):
        seen.append(entry.event_id)
        if entry.event_id == "first":
            loop.post(QueueEntry(EventFunction.HANDLE, event_id="nested"))
            # A nested drain request must not run the new entry inline.
            assert not loop.drain()
            seen.append("after-nested-drain")

    loop.process_entry = process
    loop.post(QueueEntry(EventFunction.HANDLE, event_id="first"))
    loop.post(QueueEntry(EventFunction.HANDLE, event_id="second"))
    assert loop.drain()
    assert seen == ["first", "after-nested-drain", "second", "nested"]


def test_failing_entry_does_not_block_queue():
    seen = []

    def process(entry):
        if entry.event_id == "bad":
            raise RuntimeError("boom")
        seen.append(entry.event_id)

    loop = DispatchLoop(process)
    loop.post(QueueEntry(EventFunction.HANDLE, event_id="bad"))
    loop.post(QueueEntry(EventFunction.HANDLE, event_id="good"))
    loop.drain()
    assert seen == ["good"]


def test_continuations_and_hooks():
    calls = []
    loop = DispatchLoop(
        lambda entry: calls.append("entry"),
        before_drain=lambda: calls.append("before"),
        after_drain=lambda: calls.append("after"),
    )
    loop.post(QueueEntry(EventFunction.HANDLE, event_id="x"))
    loop.post(Continuation(lambda: calls.append("continuation"), "test"))
    loop.drain()
    assert calls == ["before", "entry", "continuation", "after"]


def test_work_posted_by_after_hook_triggers_another_pass():
    calls = []
    loop = DispatchLoop(lambda entry: calls.append(entry.event_id))

    def after():
        calls.append("after")
        if calls.count("after") == 1:
            loop.post(QueueEntry(EventFunction.HANDLE, event_id="late"))

    loop.after_drain = after
    loop.post(QueueEntry(EventFunction.HANDLE, event_id="early"))
    loop.drain()
    assert calls == ["early", "after", "late", "after"]


def test_disabled_loop_drops_work():
    seen = []
    loop = DispatchLoop(lambda entry: seen.append(entry))
    loop.post(QueueEntry(EventFunction.HANDLE, event_id="x"))
    loop.disable()
    assert loop.pending_count() == 0
    assert not loop.drain()
    assert seen == []


def test_new_and_existing_entries():
    assert QueueEntry(EventFunction.INSERT, event=object()).is_new
    assert not QueueEntry(EventFunction.HANDLE, event_id="al_x").is_new
