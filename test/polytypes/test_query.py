from sqlalchemy import func
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy import testing
from sqlalchemy import text
from sqlalchemy.orm import joinedload
from sqlalchemy.orm import selectinload
from sqlalchemy.testing import eq_
from sqlalchemy.testing import is_
from sqlalchemy.testing.fixtures import fixture_session
from ._fixtures import PolytypesFixtureTest


class ComposedQueryTest(PolytypesFixtureTest):
    run_inserts = "once"
    run_deletes = None

    def test_all_subtypes_in_one_query(self):
        Entity, Searchable = self.classes("Entity", "Searchable")

        s = fixture_session()

        def go():
            result = s.scalars(select(Entity.Subtype)).all()
            eq_(len(result), 10)
            eq_(
                {obj.type for obj in result},
                {"Entity", "Entity.User", "Entity.Organisation"},
            )

        self.assert_sql_count(testing.db, go, 1)

        eq_(
            sorted(
                type(obj).__name__
                for obj in s.scalars(select(Searchable.Subtype))
            ),
            ["Post"] * 6 + ["User"] * 6,
        )

    def test_cross_subtype_filter(self):
        Entity = self.classes.Entity

        s = fixture_session()
        result = s.scalars(
            select(Entity.Subtype)
            .where(
                Entity.Subtype.billing_plan.between(1, 3),
                or_(
                    Entity.Subtype.user_username == "user1",
                    Entity.Subtype.organisation_business_number == "BN2",
                ),
            )
            .order_by(Entity.Subtype.id)
        ).all()
        eq_([obj.id for obj in result], [3, 5])
        eq_(
            [type(obj) for obj in result],
            [Entity.Organisation, Entity.User],
        )

    def test_textual_filter(self):
        Entity = self.classes.Entity

        s = fixture_session()
        result = s.scalars(
            select(Entity.Subtype)
            .where(
                text(
                    "billing_plan BETWEEN 1 AND 3 AND "
                    "(user_username = 'user1' OR "
                    "organisation_business_number = 'BN2')"
                )
            )
            .order_by(Entity.Subtype.id)
        ).all()
        eq_([obj.id for obj in result], [3, 5])

    def test_cross_subtype_order(self):
        Entity = self.classes.Entity

        s = fixture_session()
        result = s.scalars(
            select(Entity.Subtype)
            .where(Entity.Subtype.id.in_([1, 2, 4, 5]))
            .order_by(Entity.Subtype.billing_plan.desc(), Entity.Subtype.id)
        ).all()
        eq_(
            [(obj.id, obj.billing_plan) for obj in result],
            [(2, 2), (5, 2), (1, 1), (4, 1)],
        )

    def test_order_by_aliased_column(self):
        Entity = self.classes.Entity

        s = fixture_session()
        result = s.scalars(
            select(Entity.Subtype)
            .where(Entity.Subtype.user_id.is_not(None))
            .order_by(Entity.Subtype.user_username.desc())
        ).all()
        eq_(
            [obj.username for obj in result],
            ["user5", "user4", "user3", "user2", "user1", "user0"],
        )

    def test_filter_by(self):
        Entity = self.classes.Entity

        s = fixture_session()
        proxy = s.scalars(
            select(Entity.Subtype).filter_by(user_username="user2")
        ).one()
        eq_(proxy.id, 6)

        proxy = s.scalars(
            select(Entity.User).filter_by(username="user3", billing_plan=1)
        ).one()
        eq_(proxy.id, 7)

    def test_aggregate(self):
        Entity = self.classes.Entity

        s = fixture_session()
        eq_(
            s.execute(
                select(Entity.Subtype.type, func.count())
                .group_by(Entity.Subtype.type)
                .order_by(Entity.Subtype.type)
            ).all(),
            [("Entity", 1), ("Entity.Organisation", 3), ("Entity.User", 6)],
        )


class NarrowedQueryTest(PolytypesFixtureTest):
    run_inserts = "once"
    run_deletes = None

    def test_narrowed_returns_only_its_subtype(self):
        Entity = self.classes.Entity

        s = fixture_session()
        result = s.scalars(select(Entity.User).order_by(Entity.User.id)).all()
        eq_([obj.id for obj in result], [4, 5, 6, 7, 8, 9])
        eq_({type(obj) for obj in result}, {Entity.User})

        eq_(
            s.scalars(
                select(Entity.Organisation.business_number).order_by(
                    Entity.Organisation.id
                )
            ).all(),
            ["BN0", "BN1", "BN2"],
        )

    def test_narrowed_filter_and_order(self):
        Entity = self.classes.Entity

        s = fixture_session()
        result = s.scalars(
            select(Entity.User)
            .where(Entity.User.status == 1)
            .order_by(Entity.User.email.desc())
        ).all()
        eq_([obj.username for obj in result], ["user4", "user1"])

    def test_subset_entity(self):
        Entity = self.classes.Entity

        polytype = Entity.Subtype.__polytype__
        is_(polytype.entity("user", "organisation"), Entity.Subtype)
        is_(polytype.entity("organisation"), polytype.entity("organisation"))

        s = fixture_session()
        result = s.scalars(polytype.select("organisation")).all()
        eq_(sorted(obj.id for obj in result), [1, 2, 3])
        eq_({type(obj) for obj in result}, {Entity.Organisation})

    def test_subset_entity_filter(self):
        Entity = self.classes.Entity

        entity = Entity.Subtype.__polytype__.entity("user")
        s = fixture_session()
        result = s.scalars(
            select(entity)
            .where(entity.user_username.in_(["user0", "user5"]))
            .order_by(entity.id)
        ).all()
        eq_([obj.id for obj in result], [4, 9])


class EagerLoadTest(PolytypesFixtureTest):
    run_inserts = "once"
    run_deletes = None

    def test_lazyload_inherited(self):
        Entity = self.classes.Entity

        s = fixture_session()
        proxy = s.scalars(
            select(Entity.Subtype).filter_by(user_username="user1")
        ).one()
        eq_(proxy.user_organisation.business_number, "BN1")
        eq_([p.title for p in proxy.user_posts], ["Post Title 1"])
        eq_([n.body for n in proxy.notes], [])

    def test_joinedload_composed(self):
        Entity = self.classes.Entity

        s = fixture_session()

        def go():
            result = s.scalars(
                select(Entity.Subtype)
                .options(joinedload(Entity.Subtype.user_posts))
                .order_by(Entity.Subtype.id)
            ).unique()
            eq_(
                [[p.title for p in obj.user_posts] for obj in result],
                [[], [], []]
                + [["Post Title %d" % n] for n in range(6)]
                + [[]],
            )

        self.assert_sql_count(testing.db, go, 1)

    def test_selectinload_original_name(self):
        Entity = self.classes.Entity

        s = fixture_session()

        def go():
            result = s.scalars(
                select(Entity.User)
                .options(selectinload(Entity.User.posts))
                .order_by(Entity.User.id)
            ).all()
            eq_(
                [[p.title for p in obj.posts] for obj in result],
                [["Post Title %d" % n] for n in range(6)],
            )

        self.assert_sql_count(testing.db, go, 2)

    def test_selectinload_supertype_relationship(self):
        Entity = self.classes.Entity

        s = fixture_session()

        def go():
            result = s.scalars(
                select(Entity.Subtype)
                .options(selectinload(Entity.Subtype.notes))
                .where(Entity.Subtype.id.in_([1, 4]))
                .order_by(Entity.Subtype.id)
            ).all()
            eq_(
                [[n.body for n in obj.notes] for obj in result],
                [["first", "second"], ["third"]],
            )

        self.assert_sql_count(testing.db, go, 2)

    def test_joinedload_many_to_one(self):
        Searchable = self.classes.Searchable

        s = fixture_session()

        def go():
            result = s.scalars(
                select(Searchable.Post)
                .options(joinedload(Searchable.Post.user))
                .order_by(Searchable.Post.id)
            ).all()
            eq_(
                [obj.user.username for obj in result],
                ["user%d" % n for n in range(6)],
            )

        self.assert_sql_count(testing.db, go, 1)
