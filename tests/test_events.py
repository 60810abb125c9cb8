import threading

from nm_wifi.events import SerialDispatcher


def test_work_for_one_key_runs_in_submission_order():
    dispatcher = SerialDispatcher()
    seen: list[int] = []
    try:
        for index in range(50):
            dispatcher.submit("/dev/1", seen.append, index)
        assert dispatcher.wait_idle(2.0)
    finally:
        dispatcher.close()

    assert seen == list(range(50))


def test_keys_run_concurrently():
    dispatcher = SerialDispatcher()
    release = threading.Event()
    second_ran = threading.Event()
    try:
        dispatcher.submit("/dev/1", release.wait, 2.0)
        dispatcher.submit("/dev/2", second_ran.set)
        assert second_ran.wait(1.0)
        release.set()
        assert dispatcher.wait_idle(2.0)
    finally:
        release.set()
        dispatcher.close()

    assert sorted(dispatcher.keys) == ["/dev/1", "/dev/2"]


def test_failing_work_does_not_stop_the_queue(caplog):
    dispatcher = SerialDispatcher()
    seen: list[str] = []

    def explode() -> None:
        raise RuntimeError("boom")

    try:
        dispatcher.submit("settings", explode)
        dispatcher.submit("settings", seen.append, "after")
        assert dispatcher.wait_idle(2.0)
    finally:
        dispatcher.close()

    assert seen == ["after"]
    assert "Failed to apply event for settings" in caplog.text


def test_wait_idle_times_out_while_work_is_blocked():
    dispatcher = SerialDispatcher()
    release = threading.Event()
    try:
        dispatcher.submit("/dev/1", release.wait, 2.0)
        assert not dispatcher.wait_idle(0.05)
    finally:
        release.set()
        dispatcher.close()


def test_submit_after_close_is_rejected():
    dispatcher = SerialDispatcher()
    dispatcher.close()

    assert dispatcher.submit("/dev/1", print) is False
