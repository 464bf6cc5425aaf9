"""
Illustrates composing a "supertype" table with several "subtype" tables
into one polymorphic, queryable view using the ``sqlalchemy_polytypes``
extension.

An ``Entity`` row is either a ``User`` or an ``Organisation``, depending
on which table holds a foreign key back to it.  No discriminator column
is stored; the type is computed by the query itself.  The example shows
querying across both subtypes at once, filtering and ordering on
subtype columns, eager loading of relationships copied from the
subtypes, and creating, updating and deleting rows through the proxy
objects.

.. autosource::

"""
