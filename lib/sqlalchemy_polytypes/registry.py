# sqlalchemy_polytypes/registry.py
# Copyright (C) 2024-2026 the sqlalchemy-polytypes authors and contributors
#
# This module is part of sqlalchemy-polytypes and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

"""Declaration-time state of polymorphic supertypes.

A :class:`.Polytype` is built once per declaration from the supertype's
mapper metadata.  It owns the :class:`.JoinSpec` objects, the
:class:`.QueryCompiler` and its fragments, and the composed and narrowed
proxy classes, which it maps with a private :class:`_orm.registry`.

The process-wide :data:`.type_registry` maps each supertype to its
current :class:`.Polytype`.  Redeclaring a supertype replaces the entry
wholesale; classes and instances of an earlier declaration remain
mapped against their own fragment.

"""
from __future__ import annotations

import contextlib
from typing import Any
from typing import Callable
from typing import Dict
from typing import Iterator
from typing import Optional
from typing import Sequence
from typing import Set
from typing import Tuple
from typing import Type
from typing import Union

from sqlalchemy import exc as sa_exc
from sqlalchemy import inspect
from sqlalchemy import log
from sqlalchemy import select
from sqlalchemy import util
from sqlalchemy.orm import aliased
from sqlalchemy.orm import configure_mappers
from sqlalchemy.orm import registry
from sqlalchemy.orm.util import AliasedClass
from sqlalchemy.schema import Column
from sqlalchemy.sql.expression import Select

from . import exc
from . import persistence
from .compiler import CompiledFragment
from .compiler import QueryCompiler
from .proxy import build_proxy_class
from .proxy import discriminator_attribute
from .proxy import row_key
from .proxy import subtype_attribute
from .proxy import SubtypeProxy
from .proxy import supertype_attribute
from .reflection import identity_for_subtype as _identity_for_subtype
from .reflection import JoinSpec
from .reflection import name_for_aliased_column as _name_for_aliased_column
from .reflection import SchemaReflector
from .relations import DERIVED_FROM_INFO_KEY
from .relations import name_for_inherited_relationship as _name_for_inherited
from .relations import RelationInheritor
from .relations import supertype_relationships

COMPOSED_NAME = "Subtype"


@log.class_logger
class Polytype:
    """The composed view of a supertype and its subtypes.

    Not usually constructed directly; see
    :func:`.polymorphic_supertype_of`.

    .. attribute:: composed

        The composed proxy class, published as ``Supertype.Subtype``.

    .. attribute:: narrowed

        Dictionary of association name to narrowed proxy class, each
        published as ``Supertype.<SubtypeClassName>``.  A subtype class
        reached through more than one association is published under
        its class name for the first and under the association name for
        the others, camel-cased, e.g. ``Account.Person`` and
        ``Account.Backup``.

    """

    def __init__(
        self,
        supertype: Type[Any],
        names: Sequence[str],
        discriminator: str = "type",
        allow_overlap: bool = False,
        name_for_aliased_column: Callable[
            [Type[Any], str, str], str
        ] = _name_for_aliased_column,
        name_for_inherited_relationship: Callable[
            [Type[Any], str, str, bool], str
        ] = _name_for_inherited,
        identity_for_subtype: Callable[
            [Type[Any], str, Type[Any]], str
        ] = _identity_for_subtype,
    ):
        self.supertype = supertype
        self.discriminator = discriminator
        self.allow_overlap = allow_overlap
        self.identity = supertype.__name__

        reflector = SchemaReflector(
            supertype,
            name_for_aliased_column=name_for_aliased_column,
            identity_for_subtype=identity_for_subtype,
            discriminator=discriminator,
        )
        self.table = reflector.table
        self.specs: Tuple[JoinSpec, ...] = reflector.reflect(names)
        self.compiler = QueryCompiler(
            self.table, self.specs, discriminator, self.identity
        )

        mapper = inspect(supertype)
        self.supertype_fields: Tuple[Tuple[str, str], ...] = tuple(
            (prop.key, prop.columns[0].key)
            for prop in mapper.column_attrs
            if isinstance(prop.columns[0], Column)
            and prop.columns[0].table is self.table
        )

        self.published: Dict[str, Type[SubtypeProxy]] = {}
        self._check_published_names()

        self.registry = registry()
        self._aliases: Dict[Tuple[str, ...], AliasedClass[Any]] = {}
        try:
            self._map(name_for_inherited_relationship)
            configure_mappers()
            persistence.instrument(self)
        except Exception:
            with util.safe_reraise():
                self.registry.dispose()

        self._log(
            "declared with subtypes %s",
            ", ".join(spec.name for spec in self.specs),
        )

    def _log(self, msg: str, *args: Any) -> None:
        self.logger.info("(%s) " + msg, *((self.identity,) + args))

    def _check_published_names(self) -> None:
        mapper = inspect(self.supertype)
        names = [COMPOSED_NAME]
        names.extend(spec.published_name for spec in self.specs)
        seen: Set[str] = set()
        for name in names:
            existing = self.supertype.__dict__.get(name)
            if name in seen or name in mapper.attrs or (
                existing is not None
                and not (
                    isinstance(existing, type)
                    and issubclass(existing, SubtypeProxy)
                )
            ):
                raise sa_exc.ArgumentError(
                    "Can't publish %s.%s; the name is already in use"
                    % (self.supertype.__name__, name)
                )
            seen.add(name)

    def _map(
        self,
        name_for_inherited_relationship: Callable[
            [Type[Any], str, str, bool], str
        ],
    ) -> None:
        source = self.compiler.compile().subquery
        supertype_mapper = inspect(self.supertype)

        descriptors: Dict[str, Any] = {
            key: supertype_attribute(key, column_key)
            for key, column_key in self.supertype_fields
        }
        for spec in self.specs:
            for col in spec.columns:
                if not col.shared:
                    descriptors[col.label] = subtype_attribute(
                        spec, col.key, col.label, col.label
                    )
        descriptors[self.discriminator] = discriminator_attribute(
            self.discriminator
        )

        relationships = supertype_relationships(
            self.supertype, source, {spec.name for spec in self.specs}
        )
        routes: Dict[str, Tuple[Optional[JoinSpec], str]] = {
            key: (None, key) for key in relationships
        }
        inheritors = {}
        for spec in self.specs:
            inheritor = inheritors[spec.name] = RelationInheritor(
                spec, source, name_for_inherited_relationship
            )
            for key, rel in inheritor.inherit(qualified=True).items():
                if key in routes or key in descriptors:
                    raise sa_exc.ArgumentError(
                        "Relationship name %r for %s.%s conflicts with an "
                        "existing attribute of %s.%s; supply "
                        "name_for_inherited_relationship to disambiguate"
                        % (
                            key,
                            spec.subtype.__name__,
                            rel.info[DERIVED_FROM_INFO_KEY].key,
                            self.identity,
                            COMPOSED_NAME,
                        )
                    )
                relationships[key] = rel
                routes[key] = (spec, rel.info[DERIVED_FROM_INFO_KEY].key)

        composed = build_proxy_class(
            self, COMPOSED_NAME, None, SubtypeProxy, descriptors, routes
        )
        properties: Dict[str, Any] = {
            row_key(col.key): col for col in source.c
        }
        properties.update(relationships)
        self.registry.map_imperatively(
            composed,
            source,
            properties=properties,
            primary_key=[
                source.c[col.key] for col in supertype_mapper.primary_key
            ],
            polymorphic_on=source.c[self.discriminator],
            polymorphic_identity=self.identity,
        )
        self.composed = composed
        self.published[COMPOSED_NAME] = composed

        supertype_keys = {key for key, _ in self.supertype_fields}
        supertype_keys.add(self.discriminator)

        self.narrowed: Dict[str, Type[SubtypeProxy]] = {}
        for spec in self.specs:
            narrowed_descriptors = {}
            for col in spec.columns:
                if col.key in supertype_keys or col.key in routes:
                    self._log_shadowed(spec, col.key)
                    continue
                narrowed_descriptors[col.key] = subtype_attribute(
                    spec, col.key, col.label, col.key
                )

            narrowed_routes = dict(routes)
            narrowed_relationships = {}
            inherited = inheritors[spec.name].inherit(qualified=False)
            for key, rel in inherited.items():
                if (
                    key in narrowed_routes
                    or key in composed._pt_descriptors
                    or key in narrowed_descriptors
                ):
                    self._log_shadowed(spec, key)
                    continue
                narrowed_relationships[key] = rel
                narrowed_routes[key] = (
                    spec,
                    rel.info[DERIVED_FROM_INFO_KEY].key,
                )

            name = spec.published_name
            narrowed = build_proxy_class(
                self,
                name,
                spec,
                composed,
                narrowed_descriptors,
                narrowed_routes,
            )
            self.registry.map_imperatively(
                narrowed,
                inherits=composed,
                polymorphic_identity=spec.identity,
                properties=narrowed_relationships,
            )
            self.narrowed[spec.name] = narrowed
            self.published[name] = narrowed

    def _log_shadowed(self, spec: JoinSpec, key: str) -> None:
        if self._should_log_debug():
            self.logger.debug(
                "(%s) %s.%s is shadowed on %s.%s; use the qualified "
                "name on %s.%s",
                self.identity,
                spec.subtype.__name__,
                key,
                self.identity,
                spec.published_name,
                self.identity,
                COMPOSED_NAME,
            )

    def spec_for(self, subtype: Union[str, Type[Any]]) -> JoinSpec:
        """Return the :class:`.JoinSpec` for an association name, a subtype
        class or the name its narrowed class is published under."""
        for spec in self.specs:
            if subtype in (spec.name, spec.subtype, spec.published_name):
                return spec
        raise exc.UnknownAssociationError(
            self.supertype, str(subtype), [spec.name for spec in self.specs]
        )

    def narrowed_class(
        self, subtype: Union[str, Type[Any]]
    ) -> Type[SubtypeProxy]:
        return self.narrowed[self.spec_for(subtype).name]

    def fragment(self, *names: str) -> CompiledFragment:
        """Return the cached :class:`.CompiledFragment` for the given
        association names; with no names, the fragment of every subtype.

        """
        return self.compiler.compile(*names)

    def entity(self, *names: str) -> Any:
        """Return an entity querying the fragment of the given subtypes.

        With no names, or with every declared name, this is the composed
        class itself; otherwise an :func:`_orm.aliased` construct of the
        composed class against the narrower fragment.

        """
        fragment = self.fragment(*names)
        if len(fragment.subtypes) == len(self.specs):
            return self.composed
        try:
            return self._aliases[fragment.subtypes]
        except KeyError:
            entity = self._aliases[fragment.subtypes] = aliased(
                self.composed,
                fragment.subquery,
                adapt_on_names=True,
                name="_".join(fragment.subtypes),
            )
            return entity

    def select(self, *names: str) -> Select[Any]:
        """Return a :func:`_sql.select` of the composed class against the
        fragment of the given subtypes."""
        return select(self.entity(*names))

    def dispose(self) -> None:
        self.registry.dispose()

    def __repr__(self) -> str:
        return "<Polytype %s(%s)>" % (
            self.identity,
            ", ".join(spec.name for spec in self.specs),
        )


@log.class_logger
class TypeRegistry:
    """Process-wide mapping of supertype classes to their
    :class:`.Polytype`."""

    def __init__(self) -> None:
        self._polytypes: Dict[Type[Any], Polytype] = {}
        self._declaring: Set[Type[Any]] = set()

    def __contains__(self, supertype: Type[Any]) -> bool:
        return supertype in self._polytypes

    def __iter__(self) -> Iterator[Polytype]:
        return iter(list(self._polytypes.values()))

    def __len__(self) -> int:
        return len(self._polytypes)

    @contextlib.contextmanager
    def declaring(self, supertype: Type[Any]) -> Iterator[None]:
        """Mark ``supertype`` as being declared for the duration of the
        block."""
        self._declaring.add(supertype)
        try:
            yield
        finally:
            self._declaring.discard(supertype)

    def is_declaring(self, supertype: Type[Any]) -> bool:
        return supertype in self._declaring

    def declare(self, polytype: Polytype) -> None:
        """Publish ``polytype``, replacing any earlier declaration of
        the same supertype."""
        supertype = polytype.supertype
        previous = self._polytypes.get(supertype)
        if previous is not None:
            for name, cls in previous.published.items():
                if (
                    name not in polytype.published
                    and supertype.__dict__.get(name) is cls
                ):
                    delattr(supertype, name)

        for name, cls in polytype.published.items():
            setattr(supertype, name, cls)
        self._polytypes[supertype] = polytype

        self.logger.info(
            "%s %s",
            "redeclared" if previous is not None else "declared",
            polytype,
        )

    def get(self, supertype: Type[Any]) -> Optional[Polytype]:
        return self._polytypes.get(supertype)

    def lookup(
        self, supertype: Type[Any], subtype: Union[str, Type[Any]]
    ) -> Type[SubtypeProxy]:
        """Return the narrowed class of ``subtype`` under ``supertype``.

        ``subtype`` may be the association name, the subtype class or
        its name.

        """
        try:
            polytype = self._polytypes[supertype]
        except KeyError as err:
            raise sa_exc.InvalidRequestError(
                "%s is not declared as a polymorphic supertype"
                % getattr(supertype, "__name__", supertype)
            ) from err
        return polytype.narrowed_class(subtype)

    def dispose(self, supertype: Type[Any]) -> None:
        """Remove the declaration of ``supertype``, unpublish its proxy
        classes and dispose their mappers."""
        polytype = self._polytypes.pop(supertype, None)
        if polytype is None:
            return
        for name, cls in polytype.published.items():
            if supertype.__dict__.get(name) is cls:
                delattr(supertype, name)
        polytype.dispose()
        self.logger.info("disposed %s", polytype)

    def clear(self) -> None:
        for supertype in list(self._polytypes):
            self.dispose(supertype)


type_registry = TypeRegistry()
"""The process-wide :class:`.TypeRegistry`."""
