"""
Sweeper module.
Contains the periodic pruning of old terminal jobs.
"""

from jobqueue.sweeper.main import Sweeper, run

__all__ = ["Sweeper", "run"]
