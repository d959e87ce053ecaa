"""Remediation tasks and task schedulers."""
