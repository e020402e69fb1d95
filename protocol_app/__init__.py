"""
Protocol App - Timed Routine Execution Engine

A personal-assistant backend component that runs named, multi-step timed
routines ("protocols") for each owner, enforcing a single active run per
owner and publishing lifecycle events to timer and display surfaces.
"""

__version__ = "0.1.0"
__author__ = "Protocol App Team"
