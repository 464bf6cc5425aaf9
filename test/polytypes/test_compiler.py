from sqlalchemy import Column
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import testing
from sqlalchemy.orm import configure_mappers
from sqlalchemy.orm import relationship
from sqlalchemy.testing import assert_raises_message
from sqlalchemy.testing import eq_
from sqlalchemy.testing import fixtures
from sqlalchemy.testing import is_
from sqlalchemy.testing import is_not
from sqlalchemy_polytypes import exc
from sqlalchemy_polytypes.compiler import QueryCompiler
from sqlalchemy_polytypes.reflection import SchemaReflector


class CompilerFixture(fixtures.DeclarativeMappedTest):
    run_create_tables = None
    run_inserts = None
    run_deletes = None

    @classmethod
    def setup_classes(cls):
        Base = cls.DeclarativeBasic

        class Entity(Base):
            __tablename__ = "entities"

            id = Column(Integer, primary_key=True)
            name = Column(String(50))

            user = relationship("User", uselist=False)
            organisation = relationship("Organisation", uselist=False)

        class User(Base):
            __tablename__ = "users"

            id = Column(Integer, primary_key=True)
            username = Column(String(50))
            entity_id = Column(Integer, ForeignKey("entities.id"))

        class Organisation(Base):
            __tablename__ = "organisations"

            id = Column(Integer, primary_key=True)
            business_number = Column(String(20))
            entity_id = Column(Integer, ForeignKey("entities.id"))

        class Account(Base):
            __tablename__ = "accounts"

            id = Column(Integer, primary_key=True)
            person_id = Column(Integer, ForeignKey("people.id"))

            person = relationship("Person")

        class Person(Base):
            __tablename__ = "people"

            id = Column(Integer, primary_key=True)
            name = Column(String(50))

        configure_mappers()

    def _compiler(self, supertype, *names, **kw):
        reflector = SchemaReflector(supertype, **kw)
        return QueryCompiler(
            reflector.table,
            reflector.reflect(names),
            identity=supertype.__name__,
            **kw
        )


class FragmentSQLTest(CompilerFixture, testing.AssertsCompiledSQL):
    __dialect__ = "default"

    def test_full_fragment(self):
        Entity = self.classes.Entity

        compiler = self._compiler(Entity, "user", "organisation")
        self.assert_compile(
            compiler.compile().statement,
            "SELECT entities.id, entities.name, users.id AS user_id, "
            "users.username AS user_username, "
            "users.entity_id AS user_entity_id, "
            "organisations.id AS organisation_id, "
            "organisations.business_number AS organisation_business_number, "
            "organisations.entity_id AS organisation_entity_id, "
            "CASE WHEN (users.entity_id IS NOT NULL) THEN 'Entity.User' "
            "WHEN (organisations.entity_id IS NOT NULL) "
            "THEN 'Entity.Organisation' ELSE 'Entity' END AS type "
            "FROM entities "
            "LEFT OUTER JOIN users ON entities.id = users.entity_id "
            "LEFT OUTER JOIN organisations "
            "ON entities.id = organisations.entity_id",
            literal_binds=True,
        )

    def test_single_subtype_fragment(self):
        Entity = self.classes.Entity

        compiler = self._compiler(Entity, "user", "organisation")
        self.assert_compile(
            compiler.compile("organisation").statement,
            "SELECT entities.id, entities.name, "
            "CAST(NULL AS INTEGER) AS user_id, "
            "CAST(NULL AS VARCHAR(50)) AS user_username, "
            "CAST(NULL AS INTEGER) AS user_entity_id, "
            "organisations.id AS organisation_id, "
            "organisations.business_number AS organisation_business_number, "
            "organisations.entity_id AS organisation_entity_id, "
            "CASE WHEN (organisations.entity_id IS NOT NULL) "
            "THEN 'Entity.Organisation' ELSE 'Entity' END AS type "
            "FROM entities "
            "LEFT OUTER JOIN organisations "
            "ON entities.id = organisations.entity_id "
            "WHERE organisations.entity_id IS NOT NULL",
            literal_binds=True,
        )

    def test_belongs_to_fragment(self):
        Account = self.classes.Account

        compiler = self._compiler(Account, "person")
        self.assert_compile(
            compiler.compile().statement,
            "SELECT accounts.id, accounts.person_id, "
            "people.name AS person_name, people.id AS _person_key, "
            "CASE WHEN (people.id IS NOT NULL) THEN 'Account.Person' "
            "ELSE 'Account' END AS type "
            "FROM accounts "
            "LEFT OUTER JOIN people ON people.id = accounts.person_id",
            literal_binds=True,
        )

    def test_custom_discriminator(self):
        Account = self.classes.Account

        compiler = self._compiler(Account, "person", discriminator="kind")
        self.assert_compile(
            compiler.compile().statement,
            "SELECT accounts.id, accounts.person_id, "
            "people.name AS person_name, people.id AS _person_key, "
            "CASE WHEN (people.id IS NOT NULL) THEN 'Account.Person' "
            "ELSE 'Account' END AS kind "
            "FROM accounts "
            "LEFT OUTER JOIN people ON people.id = accounts.person_id",
            literal_binds=True,
        )

    def test_sql_renders_literals(self):
        Entity = self.classes.Entity

        fragment = self._compiler(Entity, "user").compile()
        assert "THEN 'Entity.User' ELSE 'Entity' END AS type" in fragment.sql
        eq_(str(fragment), fragment.sql)


class FragmentCacheTest(CompilerFixture):
    def test_cached_per_subset(self):
        Entity = self.classes.Entity

        compiler = self._compiler(Entity, "user", "organisation")
        is_(compiler.compile("user"), compiler.compile("user"))
        is_(
            compiler.compile("organisation", "user"),
            compiler.compile("user", "organisation"),
        )
        is_(compiler.compile(), compiler.compile("user", "organisation"))
        is_not(compiler.compile("user"), compiler.compile())

    def test_names_follow_declaration_order(self):
        Entity = self.classes.Entity

        compiler = self._compiler(Entity, "user", "organisation")
        eq_(
            compiler.compile("organisation", "user").subtypes,
            ("user", "organisation"),
        )
        eq_(compiler.normalize(()), ("user", "organisation"))

    def test_identical_column_signature(self):
        Entity = self.classes.Entity

        compiler = self._compiler(Entity, "user", "organisation")
        full = [col.key for col in compiler.compile().subquery.c]
        eq_(
            full,
            [
                "id",
                "name",
                "user_id",
                "user_username",
                "user_entity_id",
                "organisation_id",
                "organisation_business_number",
                "organisation_entity_id",
                "type",
            ],
        )
        for name in ("user", "organisation"):
            eq_(
                [col.key for col in compiler.compile(name).subquery.c],
                full,
            )

    def test_subquery_named_after_table(self):
        Entity = self.classes.Entity

        compiler = self._compiler(Entity, "user", "organisation")
        eq_(compiler.compile().subquery.name, "entities")
        eq_(compiler.compile("user").subquery.name, "entities")

    def test_unknown_name(self):
        Entity = self.classes.Entity

        compiler = self._compiler(Entity, "user", "organisation")
        assert_raises_message(
            exc.UnknownAssociationError,
            "Entity has no relationship named 'bogus'; available: "
            "organisation, user",
            compiler.compile,
            "user",
            "bogus",
        )
