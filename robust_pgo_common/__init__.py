"""Common utilities shared by the solver and the CLI.

This package hosts modules that are solver-agnostic (KPI event logging,
trajectory plotting).
"""
