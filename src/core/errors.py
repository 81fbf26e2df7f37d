"""Validation errors raised while accepting a broadcast request.

Each error's message is written for the admin who issued the command; the
bot layer replies with ``str(exc)`` as-is.
"""

from __future__ import annotations


class ScheduleInputError(ValueError):
    """Base class: the request was rejected and nothing was stored."""


class InvalidTimeFormat(ScheduleInputError):
    pass


class TimeNotInFuture(ScheduleInputError):
    pass


class InvalidTargetList(ScheduleInputError):
    pass


class EmptyMessage(ScheduleInputError):
    pass
