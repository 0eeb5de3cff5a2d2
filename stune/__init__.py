"""Open-loop PID autotuner based on an inflection point step test, with tuning rules and a software PWM driver."""

__version__ = "2.4.0"
__all__ = ["sliding_tangent", "tuning_rules", "tuner"]