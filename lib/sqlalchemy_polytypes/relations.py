# sqlalchemy_polytypes/relations.py
# Copyright (C) 2024-2026 the sqlalchemy-polytypes authors and contributors
#
# This module is part of sqlalchemy-polytypes and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

"""Re-derive relationships of a subtype onto the composed view.

The composed classes are mapped against a derived table rather than the
subtype's own table, so each relationship the subtype declares is copied
with its join condition rewritten in terms of the derived table's
aliased columns.  Given::

    class User(Base):
        __tablename__ = "users"

        id = mapped_column(Integer, primary_key=True)
        posts = relationship("Post", order_by="Post.id")

attaching ``User`` to ``Entity`` through the ``user`` association produces
``Entity.Subtype.user_posts`` joining on ``entities.user_id ==
posts.user_id``, where ``entities`` is the derived table, as well as
``Entity.User.posts`` on the narrowed class.

All re-derived relationships are ``viewonly=True``; writes go through the
records that own them, see :mod:`sqlalchemy_polytypes.proxy`.

"""
from __future__ import annotations

import itertools
from typing import Any
from typing import Callable
from typing import Collection
from typing import Dict
from typing import Mapping
from typing import Optional
from typing import Type

from sqlalchemy import inspect
from sqlalchemy import log
from sqlalchemy.orm import interfaces
from sqlalchemy.orm import relationship
from sqlalchemy.orm import RelationshipProperty
from sqlalchemy.sql import ColumnElement
from sqlalchemy.sql.expression import Subquery
from sqlalchemy.sql.util import _deep_deannotate
from sqlalchemy.sql.visitors import replacement_traverse

from . import exc
from .reflection import JoinSpec

INHERIT_INFO_KEY = "polytypes.inherit"
"""Key within :paramref:`_orm.relationship.info`; a value of ``False``
leaves the relationship off the composed and narrowed views."""

DERIVED_FROM_INFO_KEY = "polytypes.derived_from"
"""Key within the :paramref:`_orm.relationship.info` of a re-derived
relationship referring to the relationship it was copied from."""


def name_for_inherited_relationship(
    supertype: Type[Any],
    assoc_name: str,
    relationship_key: str,
    qualified: bool,
) -> str:
    """Return the attribute name for a relationship copied from a subtype.

    The default implementation is::

        if qualified:
            return "%s_%s" % (assoc_name, relationship_key)
        else:
            return relationship_key

    :param supertype: the supertype class being declared.

    :param assoc_name: name of the subtype association.

    :param relationship_key: name of the relationship on the subtype.

    :param qualified: True for the composed view, which carries the
     relationships of every subtype; False for the narrowed view of a
     single subtype.

    """
    if qualified:
        return "%s_%s" % (assoc_name, relationship_key)
    else:
        return relationship_key


def _pair_columns(rel: RelationshipProperty[Any]) -> frozenset:
    return frozenset(itertools.chain.from_iterable(rel.local_remote_pairs))


def derive_relationship(
    rel: RelationshipProperty[Any],
    replacements: Mapping[ColumnElement[Any], ColumnElement[Any]],
) -> RelationshipProperty[Any]:
    """Copy ``rel`` as a view-only relationship of a class mapped against
    a derived table.

    ``replacements`` maps the columns of the table ``rel`` is declared
    on to the derived table's columns.  For a self-referential
    relationship only the local side of the join is replaced.

    """
    if rel.secondary is not None or rel.direction is interfaces.MANYTOMANY:
        raise exc.UnsupportedAssociationKindError(
            "Can't re-derive many-to-many relationship %s onto a composed "
            "view; mark it with info={%r: False} to leave it out"
            % (rel, INHERIT_INFO_KEY)
        )
    if rel.lazy in ("dynamic", "write_only"):
        raise exc.UnsupportedAssociationKindError(
            "Can't re-derive relationship %s with lazy=%r onto a composed "
            "view; mark it with info={%r: False} to leave it out"
            % (rel, rel.lazy, INHERIT_INFO_KEY)
        )

    self_referential = rel.mapper.common_parent(rel.parent)
    local_columns: Collection[ColumnElement[Any]] = rel.local_columns
    replaced = set()

    def replace(elem: Any) -> Optional[ColumnElement[Any]]:
        if self_referential and elem not in local_columns:
            return None
        adapted = replacements.get(elem)
        if adapted is not None:
            replaced.add(elem)
        return adapted

    primaryjoin = replacement_traverse(
        _deep_deannotate(rel.primaryjoin), {}, replace
    )

    missing = set(local_columns).difference(replaced)
    if missing:
        raise exc.UnsupportedAssociationKindError(
            "Can't re-derive relationship %s onto a composed view; "
            "column(s) %s are not part of the derived table"
            % (rel, ", ".join(str(col) for col in missing))
        )

    pairs = rel.local_remote_pairs
    if rel.direction is interfaces.MANYTOONE:
        foreign_keys = [replacements[local] for local, _ in pairs]
    else:
        foreign_keys = [remote for _, remote in pairs]

    return relationship(
        rel.entity.entity,
        primaryjoin=primaryjoin,
        foreign_keys=foreign_keys,
        uselist=rel.uselist,
        order_by=list(rel.order_by) if rel.order_by else False,
        lazy=rel.lazy,
        viewonly=True,
        info={DERIVED_FROM_INFO_KEY: rel},
    )


def supertype_relationships(
    supertype: Type[Any], source: Subquery, exclude: Collection[str]
) -> Dict[str, RelationshipProperty[Any]]:
    """Re-derive the supertype's own relationships onto the composed view,
    under their original names.

    Relationships named in ``exclude`` (the subtype associations) and
    relationships marked with ``info={"polytypes.inherit": False}`` are
    left out.

    """
    mapper = inspect(supertype)
    replacements = {col: source.c[col.key] for col in mapper.local_table.c}
    return {
        rel.key: derive_relationship(rel, replacements)
        for rel in mapper.relationships
        if rel.key not in exclude
        and rel.info.get(INHERIT_INFO_KEY, True) is not False
    }


@log.class_logger
class RelationInheritor:
    """Re-derive the relationships a subtype declares onto the composed
    and narrowed views of one :class:`.JoinSpec`.

    ``source`` is the derived table the views are mapped against; it
    must carry every aliased column of ``spec``.

    """

    def __init__(
        self,
        spec: JoinSpec,
        source: Subquery,
        name_for_inherited_relationship: Callable[
            [Type[Any], str, str, bool], str
        ] = name_for_inherited_relationship,
    ):
        self.spec = spec
        self.source = source
        self.name_for_inherited_relationship = name_for_inherited_relationship

        sub_mapper = inspect(spec.subtype)
        self.replacements = {
            sub_mapper.columns[col.key]: source.c[col.label]
            for col in spec.columns
        }

    def inherit(
        self, qualified: bool = True
    ) -> Dict[str, RelationshipProperty[Any]]:
        spec = self.spec
        attaching = _pair_columns(spec.relationship)
        result = {}

        for rel in inspect(spec.subtype).relationships:
            if rel.info.get(INHERIT_INFO_KEY, True) is False:
                continue
            if _pair_columns(rel) == attaching:
                if self._should_log_debug():
                    self.logger.debug(
                        "%s.%s: dropping back reference %s",
                        spec.supertype.__name__,
                        spec.name,
                        rel,
                    )
                continue

            name = self.name_for_inherited_relationship(
                spec.supertype, spec.name, rel.key, qualified
            )
            result[name] = derive_relationship(rel, self.replacements)

        return result
