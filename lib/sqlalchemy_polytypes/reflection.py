# sqlalchemy_polytypes/reflection.py
# Copyright (C) 2024-2026 the sqlalchemy-polytypes authors and contributors
#
# This module is part of sqlalchemy-polytypes and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

"""Resolve subtype associations of a supertype into join specifications.

A :class:`.JoinSpec` is derived from an existing :func:`_orm.relationship`
of the supertype; nothing is declared twice.  The reflector only reads
mapper metadata and never alters the supertype.

"""
from __future__ import annotations

import enum
from typing import Any
from typing import Callable
from typing import Dict
from typing import FrozenSet
from typing import NamedTuple
from typing import Sequence
from typing import Set
from typing import Tuple
from typing import Type

from sqlalchemy import exc as sa_exc
from sqlalchemy import inspect
from sqlalchemy import log
from sqlalchemy.orm import interfaces
from sqlalchemy.orm import RelationshipProperty
from sqlalchemy.schema import Column
from sqlalchemy.schema import Table
from sqlalchemy.sql import ColumnElement
from sqlalchemy.sql.util import _deep_deannotate
from sqlalchemy.sql.util import ClauseAdapter

from . import exc


class JoinDirection(enum.Enum):
    """Which side of a subtype association holds the foreign key."""

    SUPERTYPE_OWNS_KEY = "belongs_to"
    """The supertype table references the subtype's primary key
    (a many-to-one :func:`_orm.relationship`)."""

    SUBTYPE_OWNS_KEY = "has_one"
    """The subtype table references the supertype's primary key
    (a scalar one-to-many :func:`_orm.relationship`)."""


class AliasedColumn(NamedTuple):
    """A subtype column as exposed by the composed derived table."""

    key: str
    """attribute key on the subtype class"""

    column: ColumnElement[Any]
    """the column, against :attr:`.JoinSpec.table`"""

    label: str
    """name of the derived table column holding the value"""

    shared: bool = False
    """True if the derived table exposes the value through the
    supertype's own foreign key column of the same name"""


class JoinSpec(NamedTuple):
    """Resolved join between a supertype and one of its subtypes."""

    name: str
    supertype: Type[Any]
    subtype: Type[Any]
    relationship: RelationshipProperty[Any]
    direction: JoinDirection
    table: Any
    onclause: ColumnElement[bool]
    foreign_keys: Tuple[ColumnElement[Any], ...]
    referred_columns: Tuple[ColumnElement[Any], ...]
    join_key: ColumnElement[Any]
    identity: str
    columns: Tuple[AliasedColumn, ...]
    key_label: str
    pk_keys: Tuple[str, ...]
    published_name: str

    @property
    def labels(self) -> Dict[str, str]:
        """Map of subtype attribute key to derived table column name."""
        return {col.key: col.label for col in self.columns}

    @property
    def private_key(self) -> bool:
        """True if the derived table carries the join key in a column of
        its own, named :attr:`.key_label`, rather than in one of
        :attr:`.columns`."""
        return self.key_label not in self.labels.values()

    def column_for_key(self, key: str) -> AliasedColumn:
        for col in self.columns:
            if col.key == key:
                return col
        raise KeyError(key)

    def __repr__(self) -> str:
        return "JoinSpec(%s.%s -> %s, %s)" % (
            self.supertype.__name__,
            self.name,
            self.subtype.__name__,
            self.direction.value,
        )


def name_for_aliased_column(
    supertype: Type[Any], assoc_name: str, column_key: str
) -> str:
    """Return the derived table column name for a subtype column.

    The default implementation is::

        return "%s_%s" % (assoc_name, column_key)

    :param supertype: the supertype class being declared.

    :param assoc_name: name of the subtype association.

    :param column_key: attribute key of the column on the subtype.

    """
    return "%s_%s" % (assoc_name, column_key)


def identity_for_subtype(
    supertype: Type[Any], assoc_name: str, subtype: Type[Any]
) -> str:
    """Return the discriminator value used for rows of a subtype.

    The default implementation is::

        return "%s.%s" % (supertype.__name__, subtype.__name__)

    When this default is in effect and one subtype class is reached
    through more than one association, every association after the
    first is identified by its camel-cased name instead, e.g.
    ``"Account.BackupContact"`` for ``backup_contact``.

    """
    return "%s.%s" % (supertype.__name__, subtype.__name__)


@log.class_logger
class SchemaReflector:
    """Derive :class:`.JoinSpec` objects from supertype relationships.

    E.g.::

        reflector = SchemaReflector(Entity)
        user_spec, organisation_spec = reflector.reflect(
            ["user", "organisation"]
        )

    """

    def __init__(
        self,
        supertype: Type[Any],
        name_for_aliased_column: Callable[
            [Type[Any], str, str], str
        ] = name_for_aliased_column,
        identity_for_subtype: Callable[
            [Type[Any], str, Type[Any]], str
        ] = identity_for_subtype,
        discriminator: str = "type",
    ):
        self.supertype = supertype
        self.mapper = inspect(supertype)
        self.name_for_aliased_column = name_for_aliased_column
        self.identity_for_subtype = identity_for_subtype
        self.discriminator = discriminator

        table = self.mapper.local_table
        if not isinstance(table, Table) or len(self.mapper.tables) != 1:
            raise exc.UnsupportedAssociationKindError(
                "Supertype %s must be mapped to exactly one Table"
                % supertype.__name__
            )
        if discriminator in table.c:
            raise sa_exc.ArgumentError(
                "Discriminator name %r conflicts with a column of %s; "
                "pass discriminator=<name> to choose another"
                % (discriminator, supertype.__name__)
            )
        self.table = table

    def reflect(self, names: Sequence[str]) -> Tuple[JoinSpec, ...]:
        seen_names: Set[str] = set()
        seen_tables: Set[Table] = {self.table}
        seen_subtypes: Set[Type[Any]] = set()
        identities: Dict[str, str] = {self.supertype.__name__: ""}
        labels: Dict[str, str] = {self.discriminator: ""}
        specs = []

        for name in names:
            if name in seen_names:
                raise sa_exc.ArgumentError(
                    "Subtype association %r is named more than once" % name
                )
            seen_names.add(name)

            spec = self._reflect_one(name, seen_tables, seen_subtypes)

            if spec.identity in identities:
                raise sa_exc.ArgumentError(
                    "Discriminator value %r for %s.%s is already used%s"
                    % (
                        spec.identity,
                        self.supertype.__name__,
                        name,
                        " by %r" % identities[spec.identity]
                        if identities[spec.identity]
                        else " by the supertype itself",
                    )
                )
            identities[spec.identity] = name

            new_labels = [
                (col.label, col.key) for col in spec.columns if not col.shared
            ]
            if spec.private_key:
                new_labels.append((spec.key_label, spec.join_key.key))
            for label, key in new_labels:
                if label in labels:
                    raise sa_exc.ArgumentError(
                        "Column name %r for %s.%s conflicts with %s"
                        % (
                            label,
                            name,
                            key,
                            "subtype %r" % labels[label]
                            if labels[label]
                            else "the discriminator",
                        )
                    )
                labels[label] = name

            if self._should_log_debug():
                self.logger.debug(
                    "%s.%s: %s join against %s on %s",
                    self.supertype.__name__,
                    name,
                    spec.direction.value,
                    spec.table.description,
                    spec.onclause,
                )
            specs.append(spec)

        return tuple(specs)

    def _reflect_one(
        self,
        name: str,
        seen_tables: Set[Table],
        seen_subtypes: Set[Type[Any]],
    ) -> JoinSpec:
        rel = self.mapper.relationships.get(name)
        if rel is None:
            raise exc.UnknownAssociationError(
                self.supertype, name, self.mapper.relationships.keys()
            )

        if rel.secondary is not None or rel.direction is interfaces.MANYTOMANY:
            raise exc.UnsupportedAssociationKindError(
                "%s.%s is a many-to-many relationship; subtypes must be "
                "joined by a foreign key on either table"
                % (self.supertype.__name__, name)
            )
        elif rel.direction is interfaces.MANYTOONE:
            direction = JoinDirection.SUPERTYPE_OWNS_KEY
        elif rel.uselist:
            raise exc.UnsupportedAssociationKindError(
                "%s.%s is a collection; a subtype association must be "
                "many-to-one or one-to-many with uselist=False"
                % (self.supertype.__name__, name)
            )
        else:
            direction = JoinDirection.SUBTYPE_OWNS_KEY

        sub_mapper = rel.mapper
        sub_table = sub_mapper.local_table
        if not isinstance(sub_table, Table) or len(sub_mapper.tables) != 1:
            raise exc.UnsupportedAssociationKindError(
                "Subtype %s of %s.%s must be mapped to exactly one Table"
                % (sub_mapper.class_.__name__, self.supertype.__name__, name)
            )
        if sub_table is self.table:
            raise exc.UnsupportedAssociationKindError(
                "Subtype %s of %s.%s is mapped to the supertype's own table"
                % (sub_mapper.class_.__name__, self.supertype.__name__, name)
            )

        onclause = _deep_deannotate(rel.primaryjoin)
        if sub_table in seen_tables:
            table = sub_table.alias(name)
            adapter = ClauseAdapter(table)
            onclause = adapter.traverse(onclause)
        else:
            table = sub_table
            seen_tables.add(sub_table)

        def adapt(col: ColumnElement[Any]) -> ColumnElement[Any]:
            if col.table is sub_table:
                return table.c[col.key]
            return col

        pairs = rel.local_remote_pairs
        if direction is JoinDirection.SUPERTYPE_OWNS_KEY:
            foreign_keys = tuple(local for local, _ in pairs)
            referred = tuple(adapt(remote) for _, remote in pairs)
        else:
            foreign_keys = tuple(adapt(remote) for _, remote in pairs)
            referred = tuple(local for local, _ in pairs)
        join_key = adapt(pairs[0][1])

        super_fks: FrozenSet[Column[Any]] = frozenset(
            local for local, _ in pairs
        )
        sub_referred = frozenset(remote for _, remote in pairs)

        columns = []
        for prop in sub_mapper.column_attrs:
            col = prop.columns[0]
            if not isinstance(col, Column) or col.table is not sub_table:
                continue
            label = self.name_for_aliased_column(
                self.supertype, name, prop.key
            )
            shared = False
            if label in self.table.c:
                if (
                    direction is JoinDirection.SUPERTYPE_OWNS_KEY
                    and col in sub_referred
                    and self.table.c[label] in super_fks
                ):
                    shared = True
                else:
                    raise sa_exc.ArgumentError(
                        "Column name %r for %s.%s conflicts with column "
                        "%r of supertype %s; supply name_for_aliased_column "
                        "to disambiguate"
                        % (
                            label,
                            name,
                            prop.key,
                            self.table.c[label].key,
                            self.supertype.__name__,
                        )
                    )
            columns.append(
                AliasedColumn(prop.key, table.c[col.key], label, shared)
            )

        for aliased in columns:
            if aliased.column is join_key:
                break
        else:
            raise exc.UnsupportedAssociationKindError(
                "Join key %s of subtype %s is not a mapped column"
                % (pairs[0][1], sub_mapper.class_.__name__)
            )
        if aliased.shared:
            # the shared label holds the supertype's own foreign key
            key_label = "_%s_key" % name
        else:
            key_label = aliased.label

        subtype = sub_mapper.class_
        repeated = subtype in seen_subtypes
        seen_subtypes.add(subtype)
        if repeated:
            published_name = "".join(
                part[:1].upper() + part[1:] for part in name.split("_")
            )
        else:
            published_name = subtype.__name__
        if repeated and self.identity_for_subtype is identity_for_subtype:
            identity = "%s.%s" % (self.supertype.__name__, published_name)
        else:
            identity = self.identity_for_subtype(self.supertype, name, subtype)

        pk_keys = tuple(
            sub_mapper.get_property_by_column(col).key
            for col in sub_mapper.primary_key
        )

        return JoinSpec(
            name=name,
            supertype=self.supertype,
            subtype=subtype,
            relationship=rel,
            direction=direction,
            table=table,
            onclause=onclause,
            foreign_keys=foreign_keys,
            referred_columns=referred,
            join_key=join_key,
            identity=identity,
            columns=tuple(columns),
            key_label=key_label,
            pk_keys=pk_keys,
            published_name=published_name,
        )
