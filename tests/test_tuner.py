import logging
from collections import deque

import pytest

from stune.tuner import SoftPwm, Tuner
from stune.tuning_rules import Action, SerialMode, TunerStatus, TuningMethod, tunings_for

STEP_US = 50_000


class FakeClock:
    def __init__(self, start=1_000_000):
        self.now = start

    def __call__(self):
        return self.now


class Plant:
    """First-order process with dead time and a quantised sensor."""

    def __init__(self, gain=1.0, tau=2.0, delay_steps=6, dt=0.05, resolution=0.1):
        self.gain = gain
        self.tau = tau
        self.dt = dt
        self.resolution = resolution
        self.output = 0.0
        self.pv = 0.0
        self.writes = []
        self._queue = deque([0.0] * delay_steps)

    def write(self, value):
        self.output = value
        self.writes.append(value)

    def step(self):
        self._queue.append(self.output)
        u = self._queue.popleft()
        self.pv += (self.gain * u - self.pv) * self.dt / self.tau

    def read(self):
        return round(self.pv / self.resolution) * self.resolution


def make(action=Action.DIRECT_IP, method=TuningMethod.ZN_PID, mode=SerialMode.PRINT_OFF, gain=1.0):
    clock = FakeClock()
    plant = Plant(gain=gain)
    tuner = Tuner(plant.read, plant.write, method, action, mode, clock)
    tuner.configure(100.0, 100.0, 0.0, 50.0, 10, 0, 100)
    return tuner, plant, clock


def run_until_tunings(tuner, plant, clock, max_runs=5000):
    statuses = []
    for _ in range(max_runs):
        clock.now += STEP_US
        plant.step()
        status = tuner.run()
        statuses.append(status)
        if status is TunerStatus.TUNINGS:
            break
    return statuses


def test_run_requires_configure():
    clock = FakeClock()
    tuner = Tuner(lambda: 0.0, lambda value: None, clock=clock)
    with pytest.raises(RuntimeError):
        tuner.run()


def test_configure_rejects_too_few_samples():
    tuner = Tuner(lambda: 0.0, lambda value: None, clock=FakeClock())
    with pytest.raises(ValueError):
        tuner.configure(100.0, 100.0, 0.0, 50.0, 10, 0, 10)


@pytest.mark.parametrize(
    "action, gain",
    [(Action.DIRECT_IP, 1.0), (Action.REVERSE_IP, -1.0), (Action.DIRECT_5T, 1.0), (Action.REVERSE_5T, -1.0)],
)
def test_full_test_finds_process_parameters(action, gain):
    tuner, plant, clock = make(action=action, gain=gain)
    statuses = run_until_tunings(tuner, plant, clock)
    assert statuses[-1] is TunerStatus.TUNINGS
    assert plant.output == 50.0
    assert tuner.dead_time() > 0
    assert tuner.tau() > 0
    assert 0.2 < tuner.process_gain() < 5


def test_gains_follow_tuning_rules():
    tuner, plant, clock = make(method=TuningMethod.MIXED_PID)
    run_until_tunings(tuner, plant, clock)
    expected = tunings_for(TuningMethod.MIXED_PID, tuner.process_gain(), tuner.dead_time(), tuner.tau())
    kp, ki, kd = tuner.get_auto_tunings()
    assert kp == pytest.approx(expected.kp)
    assert ki == pytest.approx(expected.ki)
    assert kd == pytest.approx(expected.kd)
    assert tuner.ti() == pytest.approx(expected.ti)
    assert tuner.td() == pytest.approx(expected.td)


def test_pi_method_has_no_derivative():
    tuner, plant, clock = make(method=TuningMethod.ZN_PI)
    run_until_tunings(tuner, plant, clock)
    assert tuner.kd() == 0.0
    assert tuner.td() == 0.0
    assert tuner.kp() > 0


def test_status_cycle_after_tunings():
    tuner, plant, clock = make()
    run_until_tunings(tuner, plant, clock)
    assert tuner.run() is TunerStatus.TIMER_PID
    clock.now += 100_000
    assert tuner.run() is TunerStatus.RUN_PID
    assert tuner.run() is TunerStatus.TIMER_PID
    assert tuner.run() is TunerStatus.TIMER_PID


def test_settling_holds_output_start_then_steps():
    clock = FakeClock()
    plant = Plant()
    tuner = Tuner(plant.read, plant.write, clock=clock)
    start = clock.now
    tuner.configure(100.0, 100.0, 5.0, 20.0, 10, 1, 100)
    plant.writes.clear()
    statuses = []
    for _ in range(4):
        clock.now += 100_000
        statuses.append(tuner.run())
    assert statuses == [TunerStatus.SAMPLE, TunerStatus.TEST, TunerStatus.SAMPLE, TunerStatus.TEST]
    assert plant.writes == [5.0, 5.0]

    step_time = None
    for _ in range(60):
        clock.now += 100_000
        tuner.run()
        if plant.writes[-1] == 20.0:
            step_time = clock.now
            break
    assert step_time is not None
    assert step_time - start >= 1_000_000


def test_emergency_stop_aborts_test(caplog):
    clock = FakeClock()
    writes = []
    tuner = Tuner(lambda: 10.0, writes.append, clock=clock)
    tuner.configure(100.0, 100.0, 2.0, 50.0, 10, 0, 100)
    tuner.set_emergency_stop(5.0)
    statuses = []
    with caplog.at_level(logging.WARNING, logger="stune"):
        for _ in range(3):
            clock.now += 100_000
            statuses.append(tuner.run())
    assert statuses == [TunerStatus.SAMPLE, TunerStatus.TEST, TunerStatus.TIMER_PID]
    assert "ABORT" in caplog.text
    assert writes[-1] == 2.0
    later = []
    for _ in range(50):
        clock.now += 100_000
        later.append(tuner.run())
    assert TunerStatus.TUNINGS not in later


def test_results_are_logged(caplog):
    tuner, plant, clock = make(mode=SerialMode.PRINT_SUMMARY)
    with caplog.at_level(logging.INFO, logger="stune"):
        run_until_tunings(tuner, plant, clock)
    assert "Controller Action: directIP" in caplog.text
    assert "Tuning Method: ZN_PID" in caplog.text
    text = tuner.print_results()
    assert "Process Gain:" in text
    assert "Pv Max:" in text


def test_results_quiet_when_print_off():
    tuner, plant, clock = make()
    run_until_tunings(tuner, plant, clock)
    assert tuner.print_results() is None


def test_test_run_lines_only_in_print_all():
    tuner, plant, clock = make(mode=SerialMode.PRINT_ALL)
    assert tuner.print_test_run().startswith(" sec: ")
    quiet, _, _ = make(mode=SerialMode.PRINT_SUMMARY)
    assert quiet.print_test_run() is None


def test_print_tunings_names_method():
    tuner, _, _ = make(method=TuningMethod.DAMPED_OSC_PID)
    assert "Tuning Method: Damped_PID" in tuner.print_tunings()


def test_plotter_every_nth():
    tuner, _, _ = make()
    lines = [tuner.plotter(2.0, 3.0, 1.0, 2.0, 2) for _ in range(3)]
    assert [line is not None for line in lines] == [False, False, True]
    assert lines[2] == "Setpoint:1.00, Input:2.00, Output:6.00"


def test_print_pid_tuner_every_nth():
    tuner, _, _ = make()
    lines = [tuner.print_pid_tuner(3) for _ in range(4)]
    assert [line is not None for line in lines] == [True, False, False, True]
    assert lines[0].count(",") == 2


def test_soft_pwm_switches_within_window():
    clock = FakeClock(0)
    relay = []
    pwm = SoftPwm(relay.append, clock)
    for now in (10, 500, 1005):
        clock.now = now
        assert pwm.update(20.0, 300.0) == 300.0
    assert relay == [True, False, True]


def test_soft_pwm_adjusts_around_setpoint():
    clock = FakeClock(10)
    pwm = SoftPwm(lambda state: None, clock)
    assert pwm.update(110.0, 50.0, 100.0) == 50.0 - 8
    assert pwm.update(90.0, 50.0, 100.0) == 50.0 + 8
    assert pwm.update(110.0, 5.0, 100.0) == 0


def test_soft_pwm_debounce_delays_switching():
    clock = FakeClock(10)
    relay = []
    pwm = SoftPwm(relay.append, clock)
    assert pwm.update(110.0, 200.0, 100.0, 1000, 50) == 200.0
    assert relay == [True]
    clock.now = 40
    pwm.update(110.0, 0.0, 100.0, 1000, 50)
    assert relay == [True]
    clock.now = 70
    pwm.update(110.0, 0.0, 100.0, 1000, 50)
    assert relay == [True, False]