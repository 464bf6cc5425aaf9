# sqlalchemy_polytypes/__init__.py
# Copyright (C) 2024-2026 the sqlalchemy-polytypes authors and contributors
#
# This module is part of sqlalchemy-polytypes and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

"""Compose a supertype table with several subtype tables into one
queryable, polymorphic view, without a discriminator column.

E.g.::

    from sqlalchemy_polytypes import polymorphic_supertype_of

    polymorphic_supertype_of(Entity, "user", "organisation")

    for entity in session.scalars(select(Entity.Subtype)):
        if isinstance(entity, Entity.User):
            print(entity.name, entity.username)

"""

from .compiler import CompiledFragment as CompiledFragment
from .compiler import QueryCompiler as QueryCompiler
from .decl_api import PolymorphicSupertype as PolymorphicSupertype
from .decl_api import polymorphic_supertype_of as polymorphic_supertype_of
from .exc import InconsistentSubtypeStateError as InconsistentSubtypeStateError
from .exc import PolytypeError as PolytypeError
from .exc import SubtypePersistenceError as SubtypePersistenceError
from .exc import UnknownAssociationError as UnknownAssociationError
from .exc import UnknownAttributeError as UnknownAttributeError
from .exc import (
    UnsupportedAssociationKindError as UnsupportedAssociationKindError,
)
from .persistence import reload as reload
from .persistence import save as save
from .proxy import SubtypeProxy as SubtypeProxy
from .reflection import AliasedColumn as AliasedColumn
from .reflection import JoinDirection as JoinDirection
from .reflection import JoinSpec as JoinSpec
from .reflection import SchemaReflector as SchemaReflector
from .registry import Polytype as Polytype
from .registry import type_registry as type_registry
from .registry import TypeRegistry as TypeRegistry
from .relations import INHERIT_INFO_KEY as INHERIT_INFO_KEY
from .relations import RelationInheritor as RelationInheritor

__version__ = "0.1.0"
