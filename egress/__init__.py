"""Egress service building blocks: types, pipeline log handling, admission control, handler processes and metrics."""

__version__ = "1.8.6"