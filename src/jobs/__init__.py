"""Periodic batch jobs for the delivery and reminder processors."""

from jobs.runner import JOB_NAMES, run_job

__all__ = ["JOB_NAMES", "run_job"]
