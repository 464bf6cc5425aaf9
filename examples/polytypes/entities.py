"""A billing "entity" which is either a user or an organisation.

``Entity.Subtype`` queries every entity at once, loading each row as
``Entity.User``, ``Entity.Organisation`` or, for an entity with neither,
``Entity.Subtype`` itself.  ``Entity.User`` and ``Entity.Organisation``
query one subtype only and expose its columns under their own names.

"""
from __future__ import annotations

import datetime
from typing import List
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy import ForeignKey
from sqlalchemy import func
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy.orm import configure_mappers
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import relationship
from sqlalchemy.orm import selectinload
from sqlalchemy.orm import Session
from sqlalchemy_polytypes import PolymorphicSupertype


class Base(DeclarativeBase):
    pass


class Entity(PolymorphicSupertype, Base):
    __tablename__ = "entities"
    __polymorphic_subtypes__ = ("user", "organisation")

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str]
    billing_plan: Mapped[int] = mapped_column(default=1)
    created_at: Mapped[datetime.datetime] = mapped_column(
        server_default=func.current_timestamp()
    )

    user: Mapped[Optional[User]] = relationship(back_populates="entity")
    organisation: Mapped[Optional[Organisation]] = relationship(
        back_populates="entity"
    )


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str]
    email: Mapped[Optional[str]]
    entity_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("entities.id")
    )
    organisation_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("organisations.id")
    )

    entity: Mapped[Optional[Entity]] = relationship(back_populates="user")
    organisation: Mapped[Optional[Organisation]] = relationship(
        back_populates="members"
    )
    posts: Mapped[List[Post]] = relationship(
        back_populates="author", order_by="Post.id"
    )

    def display_name(self):
        return "@%s" % self.username


class Organisation(Base):
    __tablename__ = "organisations"

    id: Mapped[int] = mapped_column(primary_key=True)
    business_number: Mapped[str]
    entity_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("entities.id")
    )

    entity: Mapped[Optional[Entity]] = relationship(
        back_populates="organisation"
    )
    members: Mapped[List[User]] = relationship(
        back_populates="organisation"
    )


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str]
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))

    author: Mapped[User] = relationship(back_populates="posts")

    def __repr__(self):
        return "Post(title=%r)" % self.title


# Entity.Subtype, Entity.User and Entity.Organisation are published
# once mappers are configured
configure_mappers()

engine = create_engine("sqlite://", echo=True)
Base.metadata.create_all(engine)

with Session(engine) as session:
    # narrowed classes create the entity and its subtype row together
    acme = Entity.Organisation(
        name="Acme", billing_plan=3, business_number="BN-0001"
    )
    session.add_all(
        [
            acme,
            Entity.User(
                name="Steven King",
                billing_plan=2,
                username="sking",
                email="steven@example.com",
            ),
            Entity.User(name="Ada", username="ada", billing_plan=1),
            Entity.Subtype(name="Unassigned"),
        ]
    )
    session.commit()

    ada = session.scalars(
        select(Entity.User).where(Entity.User.username == "ada")
    ).one()
    ada.posts.append(Post(title="Notes on the analytical engine"))
    ada.organisation_id = acme.inner.id
    session.commit()

    # one query across both subtypes, filtering on columns of each
    for entity in session.scalars(
        select(Entity.Subtype)
        .where(
            Entity.Subtype.billing_plan.between(1, 3),
            or_(
                Entity.Subtype.user_username == "ada",
                Entity.Subtype.organisation_business_number == "BN-0001",
            ),
        )
        .order_by(Entity.Subtype.billing_plan.desc())
    ):
        print(entity, entity.type, entity.name)

    # relationships of the subtype, loaded eagerly through the proxy
    for user in session.scalars(
        select(Entity.User)
        .options(selectinload(Entity.User.posts))
        .order_by(Entity.User.name)
    ):
        print(user.display_name(), user.posts, user.organisation)

    # saving updates both tables in one transaction
    ada.email = "ada@example.com"
    ada.name = "Ada Lovelace"
    ada.save()
    session.commit()

    print(ada.as_dict())
