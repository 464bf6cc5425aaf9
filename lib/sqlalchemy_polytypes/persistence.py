# sqlalchemy_polytypes/persistence.py
# Copyright (C) 2024-2026 the sqlalchemy-polytypes authors and contributors
#
# This module is part of sqlalchemy-polytypes and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

"""Persist proxies through the records that own their state.

Proxy classes are mapped against a derived table and can't be written
directly.  A pair of :class:`.Session` event hooks, installed once on
the :class:`.Session` class, hands every proxy in a flush over to its
outer and inner records:

* a pending proxy adds both of its records to the session and is
  expunged; once the flush completes it becomes persistent under the
  primary key of its outer record, and is expired so that the next
  access loads the derived row including any generated values.

* a modified proxy pushes buffered subtype writes onto its inner
  record, and is expired.

* a deleted proxy deletes its outer record; the inner record is kept,
  as it may be shared with other supertypes.

Proxies themselves never reach the unit of work.  Collections of a proxy
are view-only; items appended to or removed from one in place are
forwarded, by attribute events, to the same collection of the record
that owns it.

"""
from __future__ import annotations

import logging
from typing import Any
from typing import Optional
from typing import TYPE_CHECKING

from sqlalchemy import event
from sqlalchemy import exc as sa_exc
from sqlalchemy import inspect
from sqlalchemy.orm import attributes
from sqlalchemy.orm import make_transient_to_detached
from sqlalchemy.orm import object_session
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.orm.collections import collection_adapter

from . import exc
from .proxy import proxies
from .proxy import row_key
from .proxy import SubtypeProxy

if TYPE_CHECKING:
    from .registry import Polytype

log = logging.getLogger(__name__)

_PENDING_KEY = "polytypes.pending"


def save(proxy: SubtypeProxy, session: Optional[Session] = None) -> None:
    """Persist ``proxy`` and both of its records in one flush.

    A new proxy is added to the session and, once flushed, reloaded so
    that values generated by the database for either table are present.
    If the flush fails, the session is rolled back, no row is left in
    either table, and :class:`.SubtypePersistenceError` is raised.

    ``session`` defaults to the session ``proxy`` belongs to.

    """
    if session is None:
        session = object_session(proxy)
    if session is None:
        raise sa_exc.InvalidRequestError(
            "%s is not associated with a Session; pass session=<Session> "
            "to save it" % (proxy,)
        )

    created = inspect(proxy).key is None
    try:
        if created:
            session.add(proxy)
        session.flush()
        if created:
            _reload(session, proxy)
        else:
            proxy._pt_sync()
    except sa_exc.SQLAlchemyError as err:
        log.debug("save of %s failed, rolling back", proxy)
        session.rollback()
        raise exc.SubtypePersistenceError(
            "Could not save %s; the transaction has been rolled back"
            % (proxy,),
            err,
        ) from err


def reload(proxy: SubtypeProxy) -> None:
    """Refresh ``proxy``, then its outer record, then its inner record,
    then copy the inner record's values into the aliased columns.

    """
    session = object_session(proxy)
    if session is None:
        raise sa_exc.InvalidRequestError(
            "%s is not associated with a Session; can't reload" % (proxy,)
        )
    try:
        _reload(session, proxy)
    except sa_exc.SQLAlchemyError as err:
        raise exc.SubtypePersistenceError(
            "Could not reload %s" % (proxy,), err
        ) from err


def _reload(session: Session, proxy: SubtypeProxy) -> None:
    session.refresh(proxy)
    outer = proxy._pt_outer
    if outer is not None and inspect(outer).persistent:
        session.refresh(outer)
    inner = proxy.inner
    if inner is not None and inspect(inner).persistent:
        session.refresh(inner)
    proxy._pt_sync()


def _before_flush(
    session: Session, flush_context: Any, instances: Any
) -> None:
    pending = []
    for proxy in proxies(session.new):
        outer = proxy.outer
        inner = proxy.inner
        session.add(outer)
        if inner is not None:
            session.add(inner)
        session.expunge(proxy)
        pending.append(proxy)
        log.debug("flushing new %s through %s, %s", proxy, outer, inner)

    for proxy in proxies(session.dirty):
        if proxy._pt_assigned:
            proxy._pt_materialize()
        session.expire(proxy)
        log.debug("flushing changes to %s", proxy)

    for proxy in proxies(session.deleted):
        session.delete(proxy.outer)
        session.expunge(proxy)
        log.debug("deleting %s through %s", proxy, proxy.outer)

    if pending:
        flush_context.attributes.setdefault(_PENDING_KEY, []).extend(pending)


def _after_flush_postexec(session: Session, flush_context: Any) -> None:
    for proxy in flush_context.attributes.pop(_PENDING_KEY, ()):
        outer_state = inspect(proxy._pt_outer)
        if outer_state.key is None:
            continue
        mapper = outer_state.mapper
        for col, value in zip(mapper.primary_key, outer_state.key[1]):
            set_committed_value(proxy, row_key(col.key), value)
        make_transient_to_detached(proxy)
        session.add(proxy)
        session.expire(proxy)


def _overlap_listener(polytype: Polytype) -> Any:
    labels = [(spec.name, row_key(spec.key_label)) for spec in polytype.specs]

    def check(target: Any, *arg: Any) -> None:
        dict_ = attributes.instance_dict(target)
        present = [
            name for name, label in labels if dict_.get(label) is not None
        ]
        if len(present) > 1:
            raise exc.InconsistentSubtypeStateError(
                "%s row %s references more than one subtype: %s; declare "
                "with allow_overlap=True to use the first declared subtype"
                % (
                    polytype.supertype.__name__,
                    inspect(target).key[1]
                    if inspect(target).key
                    else "(pending)",
                    ", ".join(present),
                )
            )

    return check


def _collection_listeners(key: str) -> Any:
    def append(target: SubtypeProxy, value: Any, initiator: Any) -> None:
        owner, attr = target._pt_route_target(key)
        collection_adapter(getattr(owner, attr)).append_with_event(value)

    def remove(target: SubtypeProxy, value: Any, initiator: Any) -> None:
        owner, attr = target._pt_route_target(key)
        collection = getattr(owner, attr)
        if value in collection:
            collection_adapter(collection).remove_with_event(value)

    return append, remove


def _route_collections(cls: Any) -> None:
    mapper = inspect(cls)
    for prop in mapper.relationships:
        if prop.parent is not mapper or not prop.uselist:
            continue
        append, remove = _collection_listeners(prop.key)
        attr = getattr(cls, prop.key)
        event.listen(attr, "append", append, propagate=True)
        event.listen(attr, "remove", remove, propagate=True)


def install_session_hooks() -> None:
    """Install the flush hooks on :class:`.Session`, once per process."""
    if not event.contains(Session, "before_flush", _before_flush):
        event.listen(Session, "before_flush", _before_flush)
        event.listen(Session, "after_flush_postexec", _after_flush_postexec)
        log.debug("installed session hooks")


def instrument(polytype: Polytype) -> None:
    """Install per-declaration attribute and load hooks, and the global
    session hooks."""
    install_session_hooks()
    _route_collections(polytype.composed)
    for cls in polytype.narrowed.values():
        _route_collections(cls)
    if not polytype.allow_overlap:
        check = _overlap_listener(polytype)
        event.listen(polytype.composed, "load", check, propagate=True)
        event.listen(polytype.composed, "refresh", check, propagate=True)
