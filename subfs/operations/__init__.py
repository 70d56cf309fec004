"""Modules that implement the main logic of subfs: mounting, serving and unmounting."""

from .common import Operations
from .mount import MountFailure, MountOperations, State, UnmountFailure

__all__ = [
    "MountFailure",
    "MountOperations",
    "Operations",
    "State",
    "UnmountFailure",
]
