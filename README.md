# stune

An open-loop PID autotuner. It steps the controller output and watches how the
process variable responds. From that it works out the process gain, the dead
time and the time constant. It finds the inflection point of the s-shaped
response with a sliding tangent line. From those three values it gives PID or
PI tunings by one of several rules.

## Install

```
pip install stune
```

There are no runtime dependencies.

## What is in the package

- `stune.sliding_tangent.SlidingTangent(size)` is a circular buffer of readings.
  It has these members:
  - `average(reading)` stores a reading and returns the moving average.
  - `start_value()` returns the oldest reading held.
  - `slope(reading)` returns the rise from that oldest reading.
  - `reset(reading)` fills the buffer with one value.
  - `len()` gives the buffer size.

  A size below 1 raises `ValueError`.
- `stune.tuning_rules` holds the following:
  - the enums `Action`, `SerialMode`, `TunerStatus` and `TuningMethod`;
  - the frozen dataclass `Tunings`, with fields `kp`, `ki`, `kd`, `ti` and `td`;
  - the gain formulas `compute_kp`, `compute_ki`, `compute_kd` and
    `tunings_for`.
- `stune.tuner.Tuner` is the test state machine.
- `stune.tuner.SoftPwm` is a software PWM relay driver with an AC half-cycle
  output adjustment.

## Using the tuner

The tuner works through callables rather than hardware. You give it:

- `read_input()`, which returns the process variable;
- `write_output(value)`, which receives the controller output;
- `clock()`, which returns the time in microseconds.

If `clock` is left out, a monotonic system clock is used.

```python
from stune.tuner import Tuner
from stune.tuning_rules import Action, SerialMode, TunerStatus, TuningMethod

tuner = Tuner(
    read_input=read_temperature,
    write_output=set_heater,
    tuning_method=TuningMethod.ZN_PID,
    action=Action.DIRECT_IP,
    serial_mode=SerialMode.PRINT_SUMMARY,
    clock=clock_us,
)
tuner.configure(
    input_span=200,
    output_span=1000,
    output_start=0,
    output_step=100,
    test_time_sec=300,
    settle_time_sec=5,
    samples=500,
)
tuner.set_emergency_stop(150)

while True:
    status = tuner.run()
    if status == TunerStatus.TUNINGS:
        kp, ki, kd = tuner.get_auto_tunings()
        break
```

Call `configure()` before `run()`; otherwise `run()` raises `RuntimeError`.
`configure()` also sets the emergency stop to `input_span`, and
`set_emergency_stop()` changes it afterwards.

The test has two phases:

1. During the settle time the output is held at `output_start`.
2. The output then steps to `output_step`, and one reading is taken every
   sample period.

Each call to `run()` returns a `TunerStatus`:

- While the test is under way it returns `SAMPLE`, `TEST` or `TIMER_PID`.
- It returns `TUNINGS` once the tunings are ready.
- After that it alternates between `TIMER_PID` and `RUN_PID` at the sample
  period, so a PID loop can run on `RUN_PID`.

If the process variable rises above the emergency stop value, the tuner resets
and abandons the test. It then gives no tunings.

### Actions

- `DIRECT_IP` and `REVERSE_IP` end the test once the inflection point is found.
  That takes about half a time constant.
- `DIRECT_5T` and `REVERSE_5T` keep testing until the response levels off.

### Results

These methods give the results after a test:

| Method | Returns |
| --- | --- |
| `kp()`, `ki()`, `kd()` | gains |
| `ti()`, `td()` | integral and derivative times (`td()` is 0 for PI methods) |
| `process_gain()` | process gain |
| `dead_time()` | dead time in seconds |
| `tau()` | time constant in seconds |
| `get_auto_tunings()` | `(kp, ki, kd)` from the last test |

Progress and the summary are logged to the `stune` logger of the `logging`
module. How much is logged depends on `SerialMode`. The reporting methods also
return the text they log:

- `print_test_run()`
- `print_results()`
- `print_tunings()`
- `print_pid_tuner(every_nth)`
- `plotter(input, output, setpoint, output_scale, every_nth)`

## Tuning rules on their own

```python
from stune.tuning_rules import TuningMethod, tunings_for

t = tunings_for(TuningMethod.COHEN_COON_PI, process_gain=1.5, dead_time=2.0, tau=20.0)
print(t.kp, t.ki, t.kd)
```

The methods are Ziegler–Nichols, damped oscillation, no overshoot, Cohen–Coon,
and a mixed average of the four. Each comes in a PID form and a PI form. A zero
dead time or time constant gives `inf` or `nan` rather than an exception.

## Software PWM

`SoftPwm(set_relay, clock)` drives a relay. It calls `set_relay(True)` or
`set_relay(False)` when the relay state changes. Here `clock` returns
milliseconds.

Call `update(input, output, setpoint, window_size, debounce)` on every loop. It
returns the output it used.

After the input has once gone above a positive setpoint, and when `debounce` is
0, the output is moved by 8 towards the setpoint. The output is never below 0.

## What the package does not do

The package does not talk to hardware. Reading sensors, driving outputs and
switching relays are left to the callables you pass in. It has no command-line
program.

## Tests

```
pip install -e .[test]
pytest
```