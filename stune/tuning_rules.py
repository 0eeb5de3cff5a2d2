"""Controller settings, tuning methods and the PID tuning rules."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import IntEnum


class Action(IntEnum):
    """Direction of the process and the kind of test run."""

    DIRECT_IP = 0
    DIRECT_5T = 1
    REVERSE_IP = 2
    REVERSE_5T = 3

    @property
    def is_direct(self) -> bool:
        return self in (Action.DIRECT_IP, Action.DIRECT_5T)

    @property
    def is_inflection_test(self) -> bool:
        return self in (Action.DIRECT_IP, Action.REVERSE_IP)


class SerialMode(IntEnum):
    """How much the tuner reports while it runs."""

    PRINT_OFF = 0
    PRINT_ALL = 1
    PRINT_SUMMARY = 2
    PRINT_DEBUG = 3


class TunerStatus(IntEnum):
    """State reported by each step of the tuner."""

    SAMPLE = 0
    TEST = 1
    TUNINGS = 2
    RUN_PID = 3
    TIMER_PID = 4


class TuningMethod(IntEnum):
    """Rule used to turn process parameters into controller gains."""

    ZN_PID = 0
    DAMPED_OSC_PID = 1
    NO_OVERSHOOT_PID = 2
    COHEN_COON_PID = 3
    MIXED_PID = 4
    ZN_PI = 5
    DAMPED_OSC_PI = 6
    NO_OVERSHOOT_PI = 7
    COHEN_COON_PI = 8
    MIXED_PI = 9

    @property
    def is_pid(self) -> bool:
        return self <= TuningMethod.MIXED_PID


@dataclass(frozen=True)
class Tunings:
    """Controller gains with the integral and derivative times."""

    kp: float
    ki: float
    kd: float
    ti: float
    td: float


def _div(numerator: float, denominator: float) -> float:
    """Divide with IEEE semantics: zero denominators give inf or nan."""
    if denominator == 0:
        if numerator == 0 or math.isnan(numerator):
            return math.nan
        return math.copysign(math.inf, numerator) * math.copysign(1.0, denominator)
    return numerator / denominator


def _ratio(dead_time: float, tau: float) -> float:
    return _div(dead_time, tau)


def compute_kp(method: TuningMethod, process_gain: float, dead_time: float, tau: float) -> float:
    """Proportional gain for ``method``."""
    method = TuningMethod(method)
    r = _ratio(dead_time, tau)
    gain_delay = process_gain * dead_time
    zn_pid = _div(1.2 * tau, gain_delay) / 2
    do_pid = _div(0.66 * tau, gain_delay)
    no_pid = _div(0.6, process_gain) * _div(tau, dead_time)
    cc_pid = process_gain * (1.33 + r / 4.0)
    zn_pi = _div(0.9 * tau, gain_delay) / 2
    do_pi = _div(0.495 * tau, gain_delay)
    no_pi = _div(0.35, process_gain) * _div(tau, dead_time)
    cc_pi = process_gain * (0.9 + r / 12.0)
    return {
        TuningMethod.ZN_PID: zn_pid,
        TuningMethod.DAMPED_OSC_PID: do_pid,
        TuningMethod.NO_OVERSHOOT_PID: no_pid,
        TuningMethod.COHEN_COON_PID: cc_pid,
        TuningMethod.MIXED_PID: 0.25 * (zn_pid + do_pid + no_pid + cc_pid),
        TuningMethod.ZN_PI: zn_pi,
        TuningMethod.DAMPED_OSC_PI: do_pi,
        TuningMethod.NO_OVERSHOOT_PI: no_pi,
        TuningMethod.COHEN_COON_PI: cc_pi,
        TuningMethod.MIXED_PI: 0.25 * (zn_pi + do_pi + no_pi + cc_pi),
    }[method]


def compute_ki(method: TuningMethod, dead_time: float, tau: float) -> float:
    """Integral gain for ``method``."""
    method = TuningMethod(method)
    r = _ratio(dead_time, tau)
    zn_pid = _div(1.0, 2.0 * dead_time)
    do_pid = _div(1.0, tau / 3.6)
    no_pid = _div(1.0, tau)
    cohen_coon = _div(1.0, _div(dead_time * (30.0 + 3.0 * r), 9.0 + 20.0 * r))
    zn_pi = _div(1.0, 3.3333 * dead_time)
    do_pi = _div(1.0, tau / 2.6)
    no_pi = _div(1.0, 1.2 * tau)
    return {
        TuningMethod.ZN_PID: zn_pid,
        TuningMethod.DAMPED_OSC_PID: do_pid,
        TuningMethod.NO_OVERSHOOT_PID: no_pid,
        TuningMethod.COHEN_COON_PID: cohen_coon,
        TuningMethod.MIXED_PID: 0.25 * (zn_pid + do_pid + no_pid + cohen_coon),
        TuningMethod.ZN_PI: zn_pi,
        TuningMethod.DAMPED_OSC_PI: do_pi,
        TuningMethod.NO_OVERSHOOT_PI: no_pi,
        TuningMethod.COHEN_COON_PI: cohen_coon,
        TuningMethod.MIXED_PI: 0.25 * (zn_pi + do_pi + no_pi + cohen_coon),
    }[method]


def compute_kd(method: TuningMethod, dead_time: float, tau: float) -> float:
    """Derivative gain for ``method``; zero for PI methods."""
    method = TuningMethod(method)
    if not method.is_pid:
        return 0.0
    r = _ratio(dead_time, tau)
    zn_pid = _div(1.0, 0.5 * dead_time)
    do_pid = _div(1.0, tau / 9.0)
    no_pid = _div(1.0, 0.5 * dead_time)
    cc_pid = _div(1.0, _div(4.0 * dead_time, 11.0 + 2.0 * r))
    return {
        TuningMethod.ZN_PID: zn_pid,
        TuningMethod.DAMPED_OSC_PID: do_pid,
        TuningMethod.NO_OVERSHOOT_PID: no_pid,
        TuningMethod.COHEN_COON_PID: cc_pid,
        TuningMethod.MIXED_PID: 0.25 * (zn_pid + do_pid + no_pid + cc_pid),
    }[method]


def tunings_for(method: TuningMethod, process_gain: float, dead_time: float, tau: float) -> Tunings:
    """All gains and times for ``method`` from the process parameters."""
    method = TuningMethod(method)
    kp = compute_kp(method, process_gain, dead_time, tau)
    ki = compute_ki(method, dead_time, tau)
    kd = compute_kd(method, dead_time, tau)
    ti = _div(kp, ki)
    td = _div(kp, kd) if method.is_pid else 0.0
    return Tunings(kp=kp, ki=ki, kd=kd, ti=ti, td=td)