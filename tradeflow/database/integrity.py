"""
Translation of storage constraint failures into domain errors.
"""

import re
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError

from tradeflow.core.errors import ConstraintViolationError

_CONSTRAINT_IN_MESSAGE = re.compile(r'constraint "([^"]+)"')


def constraint_name_from(exc: IntegrityError) -> Optional[str]:
    """
    Name of the violated constraint, if the driver reported one.

    asyncpg exposes ``constraint_name`` on the driver exception, which the
    DBAPI adapter chains as ``__cause__`` of ``exc.orig``. Falls back to
    parsing the server message.
    """
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        name = getattr(candidate, "constraint_name", None)
        if name:
            return name

    match = _CONSTRAINT_IN_MESSAGE.search(str(orig if orig is not None else exc))
    return match.group(1) if match else None


def to_constraint_violation(
    exc: IntegrityError, message: str, **context: Any
) -> ConstraintViolationError:
    return ConstraintViolationError(
        message, constraint=constraint_name_from(exc), **context
    )
