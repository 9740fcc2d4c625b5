from form_suggest.keyboard.monitor import Geometry, KeyboardVisibilityMonitor

TOTAL = 1000


class FakeClock:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


class FakeHandle:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    def __init__(self):
        self.pending = []

    def __call__(self, delay, callback):
        handle = FakeHandle(delay, callback)
        self.pending.append(handle)
        return handle

    def run_pending(self):
        handles, self.pending = self.pending, []
        for handle in handles:
            if not handle.cancelled:
                handle.callback()


class Recorder:
    def __init__(self):
        self.events = []

    def on_keyboard_visibility_changed(self, is_visible, keyboard_height):
        self.events.append(("visibility", is_visible, keyboard_height))

    def on_keyboard_height_changed(self, keyboard_height):
        self.events.append(("height", keyboard_height))

    def visibility(self):
        return [e for e in self.events if e[0] == "visibility"]


class Screen:
    """Mutable geometry read by the delayed re-check."""

    def __init__(self, visible_bottom=TOTAL):
        self.visible_bottom = visible_bottom

    def __call__(self):
        return Geometry(TOTAL, self.visible_bottom)


def make_monitor(screen=None):
    clock = FakeClock()
    scheduler = FakeScheduler()
    monitor = KeyboardVisibilityMonitor(
        geometry_source=screen,
        clock=clock,
        schedule=scheduler,
        throttle_ms=100,
        visibility_ratio=0.05,
        height_delta_px=50,
        recheck_delay_ms=200,
        default_height=800,
    )
    recorder = Recorder()
    monitor.subscribe(recorder)
    return monitor, clock, scheduler, recorder


def test_keyboard_becomes_visible():
    monitor, clock, _scheduler, recorder = make_monitor()
    monitor.on_layout(TOTAL, TOTAL)
    assert recorder.events == []

    clock.t = 0.2
    monitor.on_layout(TOTAL, 600)
    assert recorder.events == [("visibility", True, 400)]
    assert monitor.is_visible
    assert monitor.keyboard_height == 400
    assert monitor.panel_offset == 400


def test_oscillation_inside_throttle_window_is_one_transition():
    monitor, clock, _scheduler, recorder = make_monitor()
    monitor.on_layout(TOTAL, 600)
    for step in range(1, 10):
        clock.t = step * 0.01
        monitor.on_layout(TOTAL, TOTAL if step % 2 else 600)
    assert recorder.visibility() == [("visibility", True, 400)]
    assert not monitor.hide_pending


def test_sustained_drop_publishes_exactly_one_hidden():
    screen = Screen(600)
    monitor, clock, scheduler, recorder = make_monitor(screen)
    monitor.on_layout(TOTAL, 600)

    clock.t = 0.2
    screen.visible_bottom = TOTAL
    monitor.on_layout(TOTAL, TOTAL)
    assert monitor.hide_pending
    assert monitor.is_visible

    # transient glitch inside the re-check window
    clock.t = 0.3
    monitor.on_layout(TOTAL, 600)
    assert recorder.visibility() == [("visibility", True, 400)]

    scheduler.run_pending()
    clock.t = 0.5
    monitor.on_layout(TOTAL, TOTAL)
    scheduler.run_pending()

    assert recorder.visibility() == [("visibility", True, 400), ("visibility", False, 0)]
    assert not monitor.is_visible
    assert monitor.keyboard_height == 0


def test_glitch_that_recovers_keeps_keyboard_visible():
    screen = Screen(600)
    monitor, clock, scheduler, recorder = make_monitor(screen)
    monitor.on_layout(TOTAL, 600)

    clock.t = 0.2
    monitor.on_layout(TOTAL, TOTAL)
    assert scheduler.pending[0].delay == 0.2
    scheduler.run_pending()

    assert monitor.is_visible
    assert recorder.visibility() == [("visibility", True, 400)]
    assert not monitor.hide_pending


def test_height_updates_need_minimum_delta():
    monitor, clock, _scheduler, recorder = make_monitor()
    monitor.on_layout(TOTAL, 600)
    clock.t = 0.2
    monitor.on_layout(TOTAL, 570)
    assert recorder.events == [("visibility", True, 400)]
    clock.t = 0.4
    monitor.on_layout(TOTAL, 520)
    assert recorder.events[-1] == ("height", 480)
    assert monitor.panel_offset == 480


def test_tiny_heights_are_not_remembered():
    monitor, _clock, _scheduler, recorder = make_monitor()
    monitor.on_layout(TOTAL, 920)
    assert recorder.events == [("visibility", True, 80)]
    assert monitor.panel_offset == 800


def test_without_running_loop_hidden_is_final_immediately():
    monitor = KeyboardVisibilityMonitor(clock=FakeClock(), throttle_ms=0)
    recorder = Recorder()
    monitor.subscribe(recorder)
    monitor.on_layout(TOTAL, 600)
    monitor.on_layout(TOTAL, TOTAL)
    assert recorder.visibility()[-1] == ("visibility", False, 0)


def test_listener_failure_does_not_stop_fanout():
    class Broken:
        def on_keyboard_visibility_changed(self, *_args):
            raise RuntimeError("boom")

        def on_keyboard_height_changed(self, *_args):
            raise RuntimeError("boom")

    monitor, _clock, _scheduler, recorder = make_monitor()
    unsubscribe_recorder = monitor.subscribe(recorder)
    monitor.subscribe(Broken())
    monitor.on_layout(TOTAL, 600)
    assert recorder.events == [("visibility", True, 400)]

    unsubscribe_recorder()
    assert monitor.is_visible


def test_close_cancels_pending_recheck():
    monitor, clock, scheduler, recorder = make_monitor(Screen(TOTAL))
    monitor.on_layout(TOTAL, 600)
    clock.t = 0.2
    monitor.on_layout(TOTAL, TOTAL)
    handle = scheduler.pending[0]
    monitor.close()
    assert handle.cancelled
    assert not monitor.hide_pending
    scheduler.run_pending()
    assert recorder.visibility() == [("visibility", True, 400)]
