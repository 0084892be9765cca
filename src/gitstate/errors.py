"""Exception types raised by gitstate.

Backend command failures are reported through ``CommandResult`` rather than
exceptions; these cover the cases where no result can be produced at all.
"""

from __future__ import annotations


class GitStateError(Exception):
    """Base class for gitstate errors."""


class RepositoryError(GitStateError):
    """Path is not inside a usable git repository."""
