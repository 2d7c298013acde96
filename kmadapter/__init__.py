"""Metric collectors for horizontal pod autoscaling: Prometheus, Skipper, pods, ZMON, Nakadi and scaling schedules."""

__version__ = "0.1.0"