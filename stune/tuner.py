"""Open-loop PID autotuner driven by an inflection point test on a step response."""

from __future__ import annotations

import logging
import math
import time
from typing import Callable, Optional

from .sliding_tangent import SlidingTangent
from .tuning_rules import (
    Action,
    SerialMode,
    TunerStatus,
    TuningMethod,
    compute_kd,
    compute_ki,
    compute_kp,
)

logger = logging.getLogger("stune")

_U32 = 0xFFFFFFFF
_EPSILON = 0.0001
_KEXP = 4.3004  # (1 / exp(-1)) / (1 - exp(-1))

_METHOD_NAMES = {
    TuningMethod.ZN_PID: "ZN_PID",
    TuningMethod.DAMPED_OSC_PID: "Damped_PID",
    TuningMethod.NO_OVERSHOOT_PID: "NoOvershoot_PID",
    TuningMethod.COHEN_COON_PID: "CohenCoon_PID",
    TuningMethod.MIXED_PID: "Mixed_PID",
    TuningMethod.ZN_PI: "ZN_PI",
    TuningMethod.DAMPED_OSC_PI: "Damped_PI",
    TuningMethod.NO_OVERSHOOT_PI: "NoOvershoot_PI",
    TuningMethod.COHEN_COON_PI: "CohenCoon_PI",
    TuningMethod.MIXED_PI: "Mixed_PI",
}

_ACTION_NAMES = {
    Action.DIRECT_IP: "directIP",
    Action.DIRECT_5T: "direct5T",
    Action.REVERSE_IP: "reverseIP",
    Action.REVERSE_5T: "reverse5T",
}


def _micros() -> int:
    return time.monotonic_ns() // 1000


def _millis() -> int:
    return time.monotonic_ns() // 1_000_000


def _div(numerator: float, denominator: float) -> float:
    """Divide with IEEE semantics: zero denominators give inf or nan."""
    if denominator == 0:
        if numerator == 0 or math.isnan(numerator):
            return math.nan
        return math.copysign(math.inf, numerator) * math.copysign(1.0, denominator)
    return numerator / denominator


class Tuner:
    """Inflection point autotuner.

    ``read_input`` returns the process value, ``write_output`` receives the
    controller output and ``clock`` returns the time in microseconds.
    """

    def __init__(
        self,
        read_input: Callable[[], float],
        write_output: Callable[[float], None],
        tuning_method: TuningMethod = TuningMethod.ZN_PID,
        action: Action = Action.DIRECT_IP,
        serial_mode: SerialMode = SerialMode.PRINT_OFF,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._read_input = read_input
        self._write_output = write_output
        self.tuning_method = TuningMethod(tuning_method)
        self.action = Action(action)
        self.serial_mode = SerialMode(serial_mode)
        self._clock = clock if clock is not None else _micros

        self._input_span = 0.0
        self._output_span = 0.0
        self._output_start = 0.0
        self._output_step = 0.0
        self._test_time_sec = 0
        self._settle_time_sec = 0
        self._samples = 0
        self._buffer_size = 0
        self._sample_period_us = 0.0
        self._tangent_period_us = 0.0
        self._settle_period_us = 0.0
        self._tangent: Optional[SlidingTangent] = None

        self._e_stop = math.inf
        self._e_stop_abort = False
        self._pv_inst = 0.0
        self._pv_avg_res = 0.0
        self._us_start = 0
        self._output = 0.0
        self._r = 0.0
        self.reset()

    def _set_output(self, value: float) -> None:
        self._output = value
        self._write_output(value)

    def reset(self) -> None:
        """Return the tuner to the start of a test."""
        self._status = TunerStatus.TEST
        self._set_output(self._output_start)
        self._us_prev = int(self._clock())
        self._settle_prev = self._us_prev
        self._ip_us = 0
        self._us = 0
        self._ku = 0.0
        self._tu = 0.0
        self._td = 0.0
        self._kp = 0.0
        self._ki = 0.0
        self._kd = 0.0
        self._pv_ip = 0.0
        self._pv_max = 0.0
        self._pv_pk = 0.0
        self._slope_ip = 0.0
        self._pv_tangent = 0.0
        self._pv_tangent_prev = 0.0
        self._pv_avg = self._pv_inst
        self._pv_start = self._pv_inst
        self._pv_inst_res = self._pv_inst
        self._ip_count = 0
        self._plot_count = 0
        self._sample_count = 0
        self._pv_pk_count = 0

    def configure(
        self,
        input_span: float,
        output_span: float,
        output_start: float,
        output_step: float,
        test_time_sec: int,
        settle_time_sec: int,
        samples: int,
    ) -> None:
        """Set the spans, the step and the timing of the test."""
        self.reset()
        self._input_span = input_span
        self._e_stop = input_span
        self._output_span = output_span
        self._output_start = output_start
        self._output_step = output_step
        self._test_time_sec = int(test_time_sec)
        self._settle_time_sec = int(settle_time_sec)
        self._samples = int(samples)
        self._buffer_size = int(self._samples * 0.06)
        self._sample_period_us = (self._test_time_sec * 1_000_000.0) / self._samples
        self._tangent_period_us = self._sample_period_us * (self._buffer_size - 1)
        self._settle_period_us = self._settle_time_sec * 1_000_000.0
        self._tangent = SlidingTangent(self._buffer_size)

    def set_emergency_stop(self, value: float) -> None:
        """Abort the test when the process value rises above ``value``."""
        self._e_stop = value

    def _emergency_stop(self) -> bool:
        if self._pv_inst > self._e_stop and not self._e_stop_abort:
            self.reset()
            self._sample_count = self._samples + 1
            self._e_stop_abort = True
            logger.warning("ABORT: pvInst > eStop")
            return True
        return False

    def run(self) -> TunerStatus:
        """Advance the tuner one step and return its status."""
        if self._tangent is None:
            raise RuntimeError("configure() must be called before run()")
        us_now = int(self._clock())
        us_elapsed = (us_now - self._us_prev) & _U32
        settle_elapsed = (us_now - self._settle_prev) & _U32
        self._us = (us_now - self._us_start) & _U32

        status = self._status
        if status is TunerStatus.SAMPLE:
            self._status = TunerStatus.TEST
            return TunerStatus.TEST
        if status is TunerStatus.TEST:
            return self._run_test(us_now, us_elapsed, settle_elapsed)
        if status is TunerStatus.RUN_PID:
            self._emergency_stop()
            self._status = TunerStatus.TIMER_PID
            return TunerStatus.TIMER_PID
        if status is TunerStatus.TIMER_PID and us_elapsed >= self._sample_period_us:
            self._us_prev = us_now
            self._status = TunerStatus.RUN_PID
            return TunerStatus.RUN_PID
        self._status = TunerStatus.TIMER_PID
        return TunerStatus.TIMER_PID

    def _run_test(self, us_now: int, us_elapsed: int, settle_elapsed: int) -> TunerStatus:
        if self._emergency_stop():
            return TunerStatus.TIMER_PID
        if settle_elapsed >= self._settle_period_us:
            if self._sample_count == 1:
                self._set_output(self._output_step)
            if us_elapsed >= self._sample_period_us:
                self._us_prev = us_now
                if self._sample_count <= self._samples and self._take_sample(us_now):
                    self._status = TunerStatus.TUNINGS
                    return TunerStatus.TUNINGS
                self._sample_count += 1
                self._status = TunerStatus.SAMPLE
                return TunerStatus.SAMPLE
            return TunerStatus.TIMER_PID
        if us_elapsed >= self._sample_period_us and not self._e_stop_abort:
            self._set_output(self._output_start)
            self._us_prev = us_now
            self._pv_inst = float(self._read_input())
            if self.serial_mode in (SerialMode.PRINT_ALL, SerialMode.PRINT_DEBUG):
                remaining = (self._settle_period_us - settle_elapsed) * 0.000001
                logger.info(
                    " sec: %.4f  out: %.2f  pv: %.3f  settling  ⤳⤳",
                    remaining,
                    self._output,
                    self._pv_inst,
                )
            self._status = TunerStatus.SAMPLE
            return TunerStatus.SAMPLE
        return TunerStatus.TIMER_PID

    def _take_sample(self, us_now: int) -> bool:
        """Process one reading; return True when the test is complete."""
        tangent = self._tangent
        last_inst, last_avg = self._pv_inst, self._pv_avg
        self._pv_inst = float(self._read_input())
        self._pv_avg = tangent.average(self._pv_inst)
        inst_resolution = abs(self._pv_inst - last_inst)
        avg_resolution = abs(self._pv_avg - last_avg)
        if _EPSILON < inst_resolution < self._pv_inst_res:
            self._pv_inst_res = inst_resolution
        if _EPSILON < avg_resolution < self._pv_avg_res:
            self._pv_avg_res = avg_resolution

        if self._sample_count == 0:
            tangent.reset(self._pv_inst)
            self._pv_avg = self._pv_inst
            self._pv_inst_res = self._pv_inst
            self._pv_avg_res = self._pv_inst
            self._pv_start = self._pv_inst
            self._us_start = us_now
            self._us = 0

        self._pv_tangent = self._pv_avg - tangent.start_value()
        direct = self.action.is_direct

        if direct:
            dead = self._pv_avg > self._pv_start + self._pv_inst_res + _EPSILON
        else:
            dead = self._pv_avg < self._pv_start - self._pv_inst_res - _EPSILON
        if not self._td and dead:
            self._td = self._us * 0.000001

        new_slope = False
        if direct:
            if self._pv_tangent > self._slope_ip + _EPSILON:
                new_slope = True
            if self._pv_tangent < _EPSILON:
                self._ip_count = 0
        else:
            if self._pv_tangent < self._slope_ip - _EPSILON:
                new_slope = True
            if self._pv_tangent > -_EPSILON:
                self._ip_count = 0
        if new_slope:
            self._ip_count = 0
            self._slope_ip = self._pv_tangent
        self._ip_count += 1

        if self.action.is_inflection_test:
            if self._ip_count == self._samples // 16:
                self._sample_count = self._samples
                self._ip_us = self._us
                self._pv_ip = self._pv_avg
                self._pv_max = self._pv_ip + self._slope_ip * _KEXP
                self._tu = (
                    _div(self._pv_max - self._pv_start, self._slope_ip)
                    * self._tangent_period_us
                    * 0.000001
                    - self._td
                )
        else:
            self._track_peak()

        if self._sample_count == self._samples:
            self._finish()
            return True
        self.print_test_run()
        self._pv_tangent_prev = self._pv_tangent
        return False

    def _track_peak(self) -> None:
        if self._sample_count >= self._samples - 1:
            self._sample_count = self._samples - 2
        if self._us > self._test_time_sec * 100_000:
            if self._pv_avg > self._pv_pk:
                self._pv_pk = self._pv_avg + self._buffer_size * 0.2 * self._pv_avg_res
                self._pv_pk_count = 0
            else:
                self._pv_pk_count += 1
            if self._pv_pk_count == int(1.2 * self._buffer_size):
                self._pv_pk_count += 1
                self._sample_count = self._samples
                self._pv_max = self._pv_avg + (self._pv_inst - self._pv_start) * 0.05
                self._tu = self._us * 1.6667 * 0.000001 * 0.286 - self._td

    def _finish(self) -> None:
        self._r = _div(self._td, self._tu)
        self._ku = abs(
            _div(
                _div(self._pv_max - self._pv_start, self._input_span),
                _div(self._output_step - self._output_start, self._output_span),
            )
        )
        self.kp()
        self.ki()
        self.kd()
        self.print_results()

    def print_test_run(self) -> Optional[str]:
        """Log one line about the current sample; return it, or None."""
        if self._sample_count >= self._samples:
            return None
        if self.serial_mode not in (SerialMode.PRINT_ALL, SerialMode.PRINT_DEBUG):
            return None
        debug = self.serial_mode is SerialMode.PRINT_DEBUG
        parts = [f" sec: {self._us * 0.000001:.4f}  out: {self._output:.2f}  pv: {self._pv_inst:.3f}"]
        if debug and not self.action.is_inflection_test:
            parts.append(
                f"  pvPk: {self._pv_pk:.3f}  pvPkCount: {self._pv_pk_count}  ipCount: {self._ip_count}"
            )
        if debug and self.action.is_inflection_test:
            parts.append(f"  ipCount: {self._ip_count}")
        parts.append(f"  tan: {self._pv_tangent:.3f}")
        if self._pv_inst > 0.9 * self._e_stop:
            parts.append(" ⚠")
        change = self._pv_tangent - self._pv_tangent_prev
        if change > _EPSILON:
            parts.append(" ↗")
        elif change < -_EPSILON:
            parts.append(" ↘")
        else:
            parts.append(" →")
        line = "".join(parts)
        logger.info("%s", line)
        return line

    def print_tunings(self) -> str:
        """Log the tuning method with its gains and times; return the text."""
        kp = self.kp()
        ki = self.ki()
        ti = self.ti()
        kd = self.kd()
        td = self.td()
        text = (
            f" Tuning Method: {_METHOD_NAMES[self.tuning_method]}\n"
            f"  Kp: {kp:.3f}\n"
            f"  Ki: {ki:.3f}  Ti: {ti:.3f}\n"
            f"  Kd: {kd:.3f}  Td: {td:.3f}"
        )
        logger.info("%s", text)
        return text

    def print_results(self) -> Optional[str]:
        """Log the summary of a finished test; return it, or None when quiet."""
        if self.serial_mode is SerialMode.PRINT_OFF:
            return None
        sections = []
        sections.append(
            f"\n Controller Action: {_ACTION_NAMES[self.action]}\n"
            f" Output Start:      {self._output_start:.2f}\n"
            f" Output Step:       {self._output_step:.2f}\n"
            f" Sample Sec:        {self._sample_period_us * 0.000001:.4f}"
        )
        if self.serial_mode is SerialMode.PRINT_DEBUG and self.action.is_inflection_test:
            slope_dir = " ↑" if self.action.is_direct else " ↓"
            sections.append(
                f" Ip Sec:            {self._ip_us * 0.000001:.4f}\n"
                f" Ip Slope:          {self._slope_ip:.3f}{slope_dir}\n"
                f" Ip Pv:             {self._pv_ip:.3f}"
            )
        pv_label = "Pv Max:" if self.action.is_direct else "Pv Min:"
        sections.append(
            f" Pv Start:          {self._pv_start:.3f}\n"
            f" {pv_label}            {self._pv_max:.3f}\n"
            f" Pv Diff:           {self._pv_max - self._pv_start:.3f}\n"
            f" Process Gain:      {self._ku:.3f}\n"
            f" Dead Time Sec:     {self._td:.3f}\n"
            f" Tau Sec:           {self._tu:.3f}"
        )
        controllability = min(_div(self._tu, self._td) + _EPSILON, 99.9)
        if controllability > 0.75:
            quality = " (easy to control)"
        elif controllability > 0.25:
            quality = " (average controllability)"
        else:
            quality = " (difficult to control)"
        sections.append(f" Tau/Dead Time:     {controllability:.1f}{quality}")

        # sample time should be at least ten times per process time constant
        sample_check = _div(self._tu, self._sample_period_us * 0.000001)
        rate = " (good sample rate)" if sample_check >= 10 else " (low sample rate)"
        sections.append(f" Tau/Sample Period: {sample_check:.1f}{rate}")

        for section in sections:
            logger.info("%s", section)
        sections.append(self.print_tunings())
        self._sample_count += 1
        return "\n".join(sections)

    def print_pid_tuner(self, every_nth: int) -> Optional[str]:
        """Log time, output and averaged input every ``every_nth`` call."""
        if self._sample_count >= self._samples:
            return None
        if self._plot_count == 0 or self._plot_count >= every_nth:
            self._plot_count = 1
            line = f"{self._us * 0.000001:.4f}, {self._output:.2f}, {self._pv_avg:.3f}"
            logger.info("%s", line)
            return line
        self._plot_count += 1
        return None

    def plotter(
        self,
        input: float,
        output: float,
        setpoint: float,
        output_scale: float = 1,
        every_nth: int = 1,
    ) -> Optional[str]:
        """Log setpoint, input and scaled output every ``every_nth`` call."""
        if self._plot_count >= every_nth:
            self._plot_count = 1
            line = f"Setpoint:{setpoint:.2f}, Input:{input:.2f}, Output:{output * output_scale:.2f}"
            logger.info("%s", line)
            return line
        self._plot_count += 1
        return None

    def get_auto_tunings(self) -> tuple[float, float, float]:
        """Return the gains found by the last test as ``(kp, ki, kd)``."""
        return self._kp, self._ki, self._kd

    def kp(self) -> float:
        """Proportional gain."""
        self._kp = compute_kp(self.tuning_method, self._ku, self._td, self._tu)
        return self._kp

    def ki(self) -> float:
        """Integral gain."""
        self._ki = compute_ki(self.tuning_method, self._td, self._tu)
        return self._ki

    def kd(self) -> float:
        """Derivative gain."""
        self._kd = compute_kd(self.tuning_method, self._td, self._tu)
        return self._kd

    def ti(self) -> float:
        """Integral time."""
        return _div(self._kp, self._ki)

    def td(self) -> float:
        """Derivative time; zero for PI methods."""
        if self.tuning_method.is_pid:
            return _div(self._kp, self._kd)
        return 0.0

    def process_gain(self) -> float:
        return self._ku

    def dead_time(self) -> float:
        """Process dead time in seconds."""
        return self._td

    def tau(self) -> float:
        """Process time constant in seconds."""
        return self._tu


class SoftPwm:
    """Software PWM for a relay, with a half-cycle correction near the setpoint.

    ``set_relay`` receives the new relay state and ``clock`` returns the time
    in milliseconds.
    """

    def __init__(
        self,
        set_relay: Callable[[bool], None],
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._set_relay = set_relay
        self._clock = clock if clock is not None else _millis
        self._window_start = 0
        self._next_switch = 0
        self._reached_setpoint = False
        self._relay_on = False

    def update(
        self,
        input: float,
        output: float,
        setpoint: float = 0,
        window_size: int = 1000,
        debounce: int = 0,
    ) -> float:
        """Drive the relay for this moment and return the output used."""
        ms_now = int(self._clock())
        if (ms_now - self._window_start) & _U32 >= window_size:
            self._window_start = ms_now

        if input > setpoint:
            self._reached_setpoint = True
        adjust = self._reached_setpoint and not debounce and setpoint > 0
        if adjust and input > setpoint:
            optimum = output - 8
        elif adjust and input < setpoint:
            optimum = output + 8
        else:
            optimum = output
        optimum = max(optimum, 0)

        elapsed = (ms_now - self._window_start) & _U32
        if not self._relay_on and optimum > elapsed:
            if ms_now > self._next_switch:
                self._next_switch = ms_now + debounce
                self._relay_on = True
                self._set_relay(True)
        elif self._relay_on and optimum < elapsed:
            if ms_now > self._next_switch:
                self._next_switch = ms_now + debounce
                self._relay_on = False
                self._set_relay(False)
        return optimum