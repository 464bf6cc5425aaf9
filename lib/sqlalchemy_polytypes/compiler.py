# sqlalchemy_polytypes/compiler.py
# Copyright (C) 2024-2026 the sqlalchemy-polytypes authors and contributors
#
# This module is part of sqlalchemy-polytypes and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

"""Compile the derived table that composes a supertype with its subtypes.

Given the supertype table and its :class:`.JoinSpec` objects, the
compiler produces a single ``SELECT`` which outer joins every subtype
table to the supertype, labels each subtype column as
``<association>_<column>`` and computes the discriminator from whichever
join key is present::

    SELECT entities.id, entities.name, ...,
           users.id AS user_id, users.username AS user_username, ...,
           CASE
               WHEN (users.entity_id IS NOT NULL) THEN 'Entity.User'
               WHEN (organisations.entity_id IS NOT NULL)
                   THEN 'Entity.Organisation'
               ELSE 'Entity'
           END AS type
    FROM entities
    LEFT OUTER JOIN users ON entities.id = users.entity_id
    LEFT OUTER JOIN organisations ON entities.id = organisations.entity_id

Fragments for a subset of the subtypes keep the same columns, with
``NULL`` standing in for the subtypes left out, and add a ``WHERE``
clause restricting rows to the subtypes included.

Where a subtype table is referenced by a foreign key of the supertype
and that key is exposed once under the supertype's own column, the
joined key is also selected as ``_<association>_key`` so that whether
the join matched can still be read from a row.

"""
from __future__ import annotations

from typing import Any
from typing import Dict
from typing import List
from typing import NamedTuple
from typing import Optional
from typing import Sequence
from typing import Tuple

from sqlalchemy import case
from sqlalchemy import cast
from sqlalchemy import literal
from sqlalchemy import log
from sqlalchemy import null
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy.sql.expression import Select
from sqlalchemy.sql.expression import Subquery
from sqlalchemy.sql.expression import TableClause

from . import exc
from .reflection import JoinSpec


class CompiledFragment(NamedTuple):
    """A compiled derived table for an ordered subset of subtypes."""

    subtypes: Tuple[str, ...]
    statement: Select[Any]
    subquery: Subquery

    @property
    def sql(self) -> str:
        """The SQL text of the fragment with literal values rendered."""
        return str(
            self.statement.compile(compile_kwargs={"literal_binds": True})
        )

    def __str__(self) -> str:
        return self.sql


@log.class_logger
class QueryCompiler:
    """Build and cache :class:`.CompiledFragment` objects for a supertype.

    Fragments are built at most once per distinct set of subtype names;
    names are normalized to the declaration order of their
    :class:`.JoinSpec` so that discriminator precedence never depends on
    the order in which a caller passes them.

    """

    def __init__(
        self,
        supertype_table: TableClause,
        specs: Sequence[JoinSpec],
        discriminator: str = "type",
        identity: Optional[str] = None,
    ):
        self.table = supertype_table
        self.specs = tuple(specs)
        self.discriminator = discriminator
        self.identity = identity or supertype_table.name
        self._cache: Dict[Tuple[str, ...], CompiledFragment] = {}

    def normalize(self, names: Sequence[str]) -> Tuple[str, ...]:
        """Return the given subtype names in declaration order.

        An empty sequence stands for every declared subtype.

        """
        if not names:
            return tuple(spec.name for spec in self.specs)

        known = {spec.name for spec in self.specs}
        for name in names:
            if name not in known:
                raise exc.UnknownAssociationError(self.identity, name, known)
        return tuple(spec.name for spec in self.specs if spec.name in names)

    def compile(self, *names: str) -> CompiledFragment:
        key = self.normalize(names)
        try:
            return self._cache[key]
        except KeyError:
            fragment = self._cache[key] = self._compile(key)
            return fragment

    def _compile(self, names: Tuple[str, ...]) -> CompiledFragment:
        included = [spec for spec in self.specs if spec.name in names]

        columns: List[Any] = list(self.table.c)
        from_clause: Any = self.table
        for spec in self.specs:
            if spec.name in names:
                from_clause = from_clause.outerjoin(spec.table, spec.onclause)
                columns.extend(
                    col.column.label(col.label)
                    for col in spec.columns
                    if not col.shared
                )
                if spec.private_key:
                    columns.append(spec.join_key.label(spec.key_label))
            else:
                columns.extend(
                    cast(null(), col.column.type).label(col.label)
                    for col in spec.columns
                    if not col.shared
                )
                if spec.private_key:
                    columns.append(
                        cast(null(), spec.join_key.type).label(spec.key_label)
                    )

        columns.append(
            case(
                *[
                    (spec.join_key.isnot(None), literal(spec.identity))
                    for spec in included
                ],
                else_=literal(self.identity),
            ).label(self.discriminator)
        )

        stmt = select(*columns).select_from(from_clause)
        if len(included) < len(self.specs):
            stmt = stmt.where(
                or_(*[spec.join_key.isnot(None) for spec in included])
            )

        fragment = CompiledFragment(
            names, stmt, stmt.subquery(self.table.name)
        )
        if self._should_log_debug():
            self.logger.debug(
                "compiled %s fragment for %s:\n%s",
                self.identity,
                ", ".join(names),
                fragment.sql,
            )
        return fragment
