"""Batch orchestration engine for work-queue backed pipelines."""

__version__ = "0.1.0"
