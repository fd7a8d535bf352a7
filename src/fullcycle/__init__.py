"""Autonomous task-to-merged-pull-request pipeline."""

__version__ = "0.1.0"
