# sqlalchemy_polytypes/exc.py
# Copyright (C) 2024-2026 the sqlalchemy-polytypes authors and contributors
#
# This module is part of sqlalchemy-polytypes and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

"""Exceptions raised by the polytypes extension.

All exceptions derive from :class:`.PolytypeError`, which is itself a
:class:`sqlalchemy.exc.SQLAlchemyError`, so that existing handlers for
SQLAlchemy errors continue to catch them.

"""
from __future__ import annotations

from typing import Any
from typing import Optional

from sqlalchemy import exc as sa_exc


class PolytypeError(sa_exc.SQLAlchemyError):
    """Generic error class for the polytypes extension."""


class UnknownAssociationError(PolytypeError, sa_exc.InvalidRequestError):
    """A subtype name given to a declaration or to a fragment request
    does not resolve to a relationship of the supertype.

    """

    def __init__(self, supertype: Any, name: str, available: Any = ()):
        self.supertype = supertype
        self.name = name
        msg = "%s has no relationship named %r" % (
            getattr(supertype, "__name__", supertype),
            name,
        )
        if available:
            msg += "; available: %s" % ", ".join(sorted(available))
        super().__init__(msg)


class UnsupportedAssociationKindError(PolytypeError, sa_exc.ArgumentError):
    """A relationship can't be expressed as a subtype join, or can't be
    re-derived onto the composed view.

    Subtype associations must be many-to-one or scalar one-to-many
    relationships; inherited relationships must be many-to-one or
    one-to-many relationships using a loading strategy that produces
    plain attributes.  A relationship may be excluded from inheritance
    explicitly using ``info={"polytypes.inherit": False}``.

    """


class UnknownAttributeError(PolytypeError, AttributeError):
    """An attribute was read or written which exists neither on the
    supertype nor on the subtype of a proxy.

    """


class InconsistentSubtypeStateError(PolytypeError):
    """A supertype row has more than one subtype foreign key populated.

    Raised when rows are loaded, unless the supertype was declared
    with ``allow_overlap=True`` in which case the first declared
    subtype wins.

    """


class SubtypePersistenceError(PolytypeError):
    """Saving or reloading a proxy failed; the unit of work was rolled back
    and no partial state was persisted.

    The original exception is available as :attr:`.orig`.

    """

    orig: Optional[BaseException] = None

    def __init__(self, message: str, orig: Optional[BaseException] = None):
        super().__init__(message)
        self.orig = orig
