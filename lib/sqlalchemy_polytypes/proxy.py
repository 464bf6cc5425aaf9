# sqlalchemy_polytypes/proxy.py
# Copyright (C) 2024-2026 the sqlalchemy-polytypes authors and contributors
#
# This module is part of sqlalchemy-polytypes and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

"""The proxy object bound to one row of a composed derived table.

:class:`.SubtypeProxy` is the single generic proxy type.  Each declaration
of a polymorphic supertype produces thin subclasses of it which are
mapped against the derived table produced by
:class:`.QueryCompiler`; see :mod:`sqlalchemy_polytypes.registry`.

A proxy holds two records:

* the **outer** record, an instance of the supertype's own mapped class,
  which owns the supertype columns and relationships.

* the **inner** record, an instance of the subtype's mapped class, which
  owns the subtype columns and relationships.  It is materialized lazily
  and, for rows already in the database, without emitting SQL since the
  derived table already carries every subtype column.

Every column of the derived table is mapped under a private
``_row_<name>`` key; the public attributes are :class:`.hybrid_property`
objects which produce SQL expressions at the class level and route
reads and writes to the outer or inner record at the instance level.

"""
from __future__ import annotations

from typing import Any
from typing import Dict
from typing import FrozenSet
from typing import Iterable
from typing import Optional
from typing import Sequence
from typing import Tuple
from typing import Type
from typing import TYPE_CHECKING

from sqlalchemy import inspect
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import make_transient_to_detached
from sqlalchemy.orm import Mapper
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.attributes import instance_state
from sqlalchemy.orm.attributes import set_committed_value

from . import exc
from .reflection import JoinSpec

if TYPE_CHECKING:
    from .registry import Polytype

__all__ = ["SubtypeProxy", "build_proxy_class"]


ROW_PREFIX = "_row_"

_Route = Tuple[Optional[JoinSpec], str]


def row_key(name: str) -> str:
    """Return the private attribute key a derived table column is
    mapped under."""
    return ROW_PREFIX + name


def _load_from_values(
    mapper: Mapper[Any],
    pk: Sequence[Any],
    values: Dict[str, Any],
    session: Optional[Session],
) -> Any:
    """Return the instance for primary key ``pk``, taken from the
    identity map of ``session`` if present, else built from ``values``
    as a persistent (or detached) object without emitting SQL.

    """
    key = mapper.identity_key_from_primary_key(list(pk))
    if session is not None:
        obj = session.identity_map.get(key)
        if obj is not None:
            return obj

    obj = mapper.class_manager.new_instance()
    for attr, value in values.items():
        set_committed_value(obj, attr, value)
    make_transient_to_detached(obj)
    if session is not None:
        session.add(obj)
    return obj


def supertype_attribute(key: str, column_key: str) -> hybrid_property[Any]:
    """Public attribute for a supertype column."""

    name = row_key(column_key)

    def fget(self):
        outer = self._pt_outer
        if outer is not None:
            return getattr(outer, key)
        return getattr(self, name)

    def fset(self, value):
        setattr(self.outer, key, value)

    def expr(cls):
        return getattr(cls, name)

    fget.__name__ = key
    return hybrid_property(fget, fset, expr=expr)


def subtype_attribute(
    spec: JoinSpec, key: str, label: str, public_name: str
) -> hybrid_property[Any]:
    """Public attribute for a subtype column, exposed either under its
    aliased name on the composed class or its own name on the narrowed
    class.

    """

    name = row_key(label)

    def fget(self):
        if type(self).__polytype_spec__ is spec:
            return getattr(self.inner, key)
        return getattr(self, name)

    def fset(self, value):
        if type(self).__polytype_spec__ is not spec:
            raise exc.UnknownAttributeError(
                "%s is not a %s; can't set %r"
                % (self, spec.subtype.__name__, public_name)
            )
        self._pt_set_inner(key, value)

    def expr(cls):
        return getattr(cls, name)

    fget.__name__ = public_name
    return hybrid_property(fget, fset, expr=expr)


def discriminator_attribute(key: str) -> hybrid_property[Any]:
    """Read-only public attribute for the discriminator."""

    name = row_key(key)

    def fget(self):
        return getattr(self, name)

    def expr(cls):
        return getattr(cls, name)

    fget.__name__ = key
    return hybrid_property(fget, expr=expr)


class SubtypeProxy:
    """Base for the composed and narrowed classes of a polymorphic
    supertype.

    Instances are produced by queries against ``Supertype.Subtype`` or
    ``Supertype.<Subtype>``, or are constructed directly::

        user = Entity.User(name="ada", user_email="ada@example.com")
        session.add(user)
        session.commit()

    Keyword arguments are assigned in turn, each routed to the record
    that owns it; an argument that is neither a supertype nor a subtype
    attribute raises :class:`.UnknownAttributeError`.

    """

    __polytype__: Polytype
    __polytype_spec__: Optional[JoinSpec] = None

    _pt_name: str = "SubtypeProxy"
    _pt_descriptors: FrozenSet[str] = frozenset()
    _pt_routes: Dict[str, _Route] = {}
    _pt_delegates: FrozenSet[str] = frozenset()

    _pt_outer: Any = None
    _pt_inner: Any = None
    _pt_assigned: Optional[Dict[str, Any]] = None

    def __init__(self, **kw: Any):
        object.__setattr__(self, "_pt_outer", self.__polytype__.supertype())
        for key, value in kw.items():
            setattr(self, key, value)
        if self.__polytype_spec__ is not None and self._pt_inner is None:
            self._pt_materialize()

    def __setattr__(self, key: str, value: Any) -> None:
        if key.startswith("_") or key in self._pt_descriptors:
            object.__setattr__(self, key, value)
        elif key in self._pt_routes:
            self._pt_route(key, value)
        elif key in self._pt_delegates:
            setattr(self.inner, key, value)
        else:
            raise exc.UnknownAttributeError(
                "%r object has no attribute %r"
                % (self._pt_name, key)
            )

    def __getattr__(self, key: str) -> Any:
        if key.startswith("_"):
            raise AttributeError(key)
        if key in self._pt_delegates:
            return getattr(self.inner, key)
        raise exc.UnknownAttributeError(
            "%r object has no attribute %r" % (self._pt_name, key)
        )

    def __repr__(self) -> str:
        state = instance_state(self)
        if state.key is None:
            ident = "transient" if state.session_id is None else "pending"
        else:
            ident = ", ".join(str(value) for value in state.key[1])
        return "<%s %s>" % (self._pt_name, ident)

    @property
    def outer(self) -> Any:
        """The supertype record."""
        outer = self._pt_outer
        if outer is None:
            outer = self._pt_resolve_outer()
            object.__setattr__(self, "_pt_outer", outer)
        return outer

    @property
    def inner(self) -> Any:
        """The subtype record, or None for a row of the supertype alone.

        Materialized on first access.

        """
        if self._pt_inner is None and self.__polytype_spec__ is not None:
            self._pt_materialize()
        return self._pt_inner

    def as_dict(self) -> Dict[str, Any]:
        """Return the fields of this proxy as a dictionary.

        Subtype fields appear under their own names; supertype fields
        take precedence where names collide.  The discriminator is
        included.

        """
        polytype = self.__polytype__
        data = {}
        inner = self.inner
        if inner is not None:
            for col in self.__polytype_spec__.columns:
                data[col.key] = getattr(inner, col.key)
        for key, _ in polytype.supertype_fields:
            data[key] = getattr(self, key)
        data[polytype.discriminator] = getattr(
            self, row_key(polytype.discriminator)
        )
        return data

    def save(self, session: Optional[Session] = None) -> None:
        """Persist the outer and inner records as a unit.

        See :func:`.persistence.save`.

        """
        from . import persistence

        persistence.save(self, session)

    def reload(self) -> None:
        """Refresh this proxy and both of its records from the database.

        See :func:`.persistence.reload`.

        """
        from . import persistence

        persistence.reload(self)

    def _pt_route_target(self, key: str) -> Tuple[Any, str]:
        """Return the record and attribute owning relationship ``key``."""
        spec, attr = self._pt_routes[key]
        if spec is None:
            return self.outer, attr
        elif spec is self.__polytype_spec__:
            return self.inner, attr
        raise exc.UnknownAttributeError(
            "%s is not a %s; can't set %r"
            % (self, spec.subtype.__name__, key)
        )

    def _pt_route(self, key: str, value: Any) -> None:
        target, attr = self._pt_route_target(key)
        setattr(target, attr, value)
        set_committed_value(self, key, value)

    def _pt_resolve_outer(self) -> Any:
        polytype = self.__polytype__
        state = instance_state(self)
        if state.key is None:
            return polytype.supertype()

        mapper = inspect(polytype.supertype)
        values = {
            key: getattr(self, row_key(column_key))
            for key, column_key in polytype.supertype_fields
        }
        pk = [getattr(self, row_key(col.key)) for col in mapper.primary_key]
        return _load_from_values(mapper, pk, values, state.session)

    def _pt_set_inner(self, key: str, value: Any) -> None:
        inner = self._pt_inner
        if inner is not None:
            setattr(inner, key, value)
            return

        assigned = self._pt_assigned
        if assigned is None:
            assigned = {}
            object.__setattr__(self, "_pt_assigned", assigned)
        assigned[key] = value

        state = instance_state(self)
        if state.key is not None:
            flag = row_key(self.__polytype__.discriminator)
            if state.session_id is not None and flag in state.dict:
                # applied by the before_flush hook
                flag_modified(self, flag)
            else:
                self._pt_materialize()

    def _pt_materialize(self) -> None:
        spec = self.__polytype_spec__
        assert spec is not None
        assigned = self._pt_assigned or {}
        object.__setattr__(self, "_pt_assigned", None)

        state = instance_state(self)
        session = state.session
        mapper = inspect(spec.subtype)

        if state.key is None and assigned and all(
            key in assigned for key in spec.pk_keys
        ):
            # reference to an existing subtype row
            pk = [assigned[key] for key in spec.pk_keys]
            inner = _load_from_values(
                mapper, pk, dict(zip(spec.pk_keys, pk)), session
            )
            setattr(self.outer, spec.name, inner)
            for key, value in assigned.items():
                if key not in spec.pk_keys:
                    setattr(inner, key, value)
            labels = spec.labels
            for key, value in assigned.items():
                set_committed_value(self, row_key(labels[key]), value)
        elif state.key is not None:
            values = {
                col.key: getattr(self, row_key(col.label))
                for col in spec.columns
            }
            pk = [values[key] for key in spec.pk_keys]
            if None in pk:
                raise exc.InconsistentSubtypeStateError(
                    "%s has no %s row to materialize"
                    % (self, spec.subtype.__name__)
                )
            inner = _load_from_values(mapper, pk, values, session)
            for key, value in assigned.items():
                setattr(inner, key, value)
        else:
            inner = spec.subtype(**assigned)
            setattr(self.outer, spec.name, inner)

        object.__setattr__(self, "_pt_inner", inner)

    def _pt_sync(self) -> None:
        """Copy the inner record's values into the aliased columns."""
        spec = self.__polytype_spec__
        inner = self._pt_inner
        if spec is None or inner is None:
            return
        for col in spec.columns:
            if not col.shared:
                set_committed_value(
                    self, row_key(col.label), getattr(inner, col.key)
                )


_RESERVED = frozenset(
    name for name in dir(SubtypeProxy) if not name.startswith("_")
)


def build_proxy_class(
    polytype: Polytype,
    name: str,
    spec: Optional[JoinSpec],
    base: Type[SubtypeProxy],
    descriptors: Dict[str, hybrid_property[Any]],
    routes: Dict[str, _Route],
) -> Type[SubtypeProxy]:
    """Create an unmapped subclass of ``base`` for ``polytype``.

    ``descriptors`` are the public attributes added by this class;
    ``routes`` maps every relationship key of the class to the record
    and attribute that own it.

    """
    all_descriptors = base._pt_descriptors.union(descriptors)
    delegates: Iterable[str] = ()
    if spec is not None:
        delegates = (
            key
            for key in dir(spec.subtype)
            if not key.startswith("_")
            and key not in all_descriptors
            and key not in routes
            and key not in _RESERVED
        )

    attrs: Dict[str, Any] = dict(descriptors)
    attrs.update(
        __module__=polytype.supertype.__module__,
        __qualname__="%s.%s" % (polytype.supertype.__qualname__, name),
        __doc__="%s view of :class:`%s`."
        % (
            "Narrowed %s" % spec.subtype.__name__
            if spec is not None
            else "Composed",
            polytype.supertype.__name__,
        ),
        __polytype__=polytype,
        __polytype_spec__=spec,
        _pt_name="%s.%s" % (polytype.supertype.__name__, name),
        _pt_descriptors=all_descriptors,
        _pt_routes=routes,
        _pt_delegates=frozenset(delegates),
    )
    cls = type(name, (base,), attrs)
    return cls


def proxies(objects: Iterable[Any]) -> Iterable[SubtypeProxy]:
    return [obj for obj in objects if isinstance(obj, SubtypeProxy)]

