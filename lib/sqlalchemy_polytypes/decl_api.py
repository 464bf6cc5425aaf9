# sqlalchemy_polytypes/decl_api.py
# Copyright (C) 2024-2026 the sqlalchemy-polytypes authors and contributors
#
# This module is part of sqlalchemy-polytypes and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

"""Public API for declaring polymorphic supertypes."""
from __future__ import annotations

from typing import Any
from typing import Type

from sqlalchemy import exc as sa_exc
from sqlalchemy import inspect
from sqlalchemy.orm import configure_mappers

from .registry import Polytype
from .registry import type_registry


def polymorphic_supertype_of(
    supertype: Type[Any], *names: str, **kw: Any
) -> Polytype:
    r"""Declare ``supertype`` as the polymorphic supertype of the classes
    reached through the relationships ``names``.

    E.g.::

        class Entity(Base):
            __tablename__ = "entities"

            id = mapped_column(Integer, primary_key=True)
            name = mapped_column(String(50))

            user = relationship("User", back_populates="entity")
            organisation = relationship(
                "Organisation", back_populates="entity"
            )

        polymorphic_supertype_of(Entity, "user", "organisation")

        session.scalars(
            select(Entity.Subtype).order_by(Entity.Subtype.name)
        ).all()

    The relationships must be many-to-one ("belongs to") or scalar
    one-to-many ("has one") relationships of ``supertype``.  Mappers are
    configured first; the declaration fails without side effects if any
    of them can't be composed.

    :param \*names: relationship names on ``supertype``, in order of
     precedence.

    :param discriminator: name of the computed discriminator column,
     ``"type"`` by default.

    :param allow_overlap: if True, a row referencing more than one
     subtype loads as the first declared one; by default such a row
     raises :class:`.InconsistentSubtypeStateError`.

    :param name_for_aliased_column: callable naming the derived table
     column for a subtype column; see
     :func:`.reflection.name_for_aliased_column`.

    :param name_for_inherited_relationship: callable naming relationships
     copied from a subtype; see
     :func:`.relations.name_for_inherited_relationship`.

    :param identity_for_subtype: callable producing the discriminator
     value of a subtype; see :func:`.reflection.identity_for_subtype`.

    :return: the :class:`.Polytype`, also registered in
     :data:`.type_registry`.

    """
    if not names:
        raise sa_exc.ArgumentError(
            "polymorphic_supertype_of() requires at least one "
            "relationship name"
        )
    with type_registry.declaring(supertype):
        configure_mappers()
        polytype = Polytype(supertype, names, **kw)
    type_registry.declare(polytype)
    return polytype


class PolymorphicSupertype:
    """Declarative mixin declaring a polymorphic supertype once mappers
    are configured.

    E.g.::

        class Entity(PolymorphicSupertype, Base):
            __tablename__ = "entities"
            __polymorphic_subtypes__ = ("user", "organisation")
            __polytype_args__ = {"discriminator": "kind"}

            id = mapped_column(Integer, primary_key=True)
            user = relationship("User")
            organisation = relationship("Organisation")

    ``__polytype_args__`` accepts the keyword arguments of
    :func:`.polymorphic_supertype_of`.

    """

    __polymorphic_subtypes__ = ()
    __polytype_args__ = {}

    @classmethod
    def __declare_last__(cls) -> None:
        if "__polymorphic_subtypes__" not in cls.__dict__:
            return
        if inspect(cls, raiseerr=False) is None:
            # unmapped since
            return
        if cls in type_registry or type_registry.is_declaring(cls):
            return
        polymorphic_supertype_of(
            cls, *cls.__polymorphic_subtypes__, **cls.__polytype_args__
        )
