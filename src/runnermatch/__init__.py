"""Runnermatch - Runner matching and dispatch engine.

This package ranks available runners for pending errands and commissions
using distance, rating and TF-IDF category affinity, and drives each task
through a timed offer/reassignment protocol until a runner accepts or the
candidate pool is exhausted.
"""

__version__ = "0.1.0"
