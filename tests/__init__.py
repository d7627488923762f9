"""
gendao test suite.

This package contains:
- unit/: Unit tests (in-memory document engine, temporary SQLite files,
  mocked CouchDB HTTP)
- integration/: Tests against a live CouchDB server (set GENDAO_COUCHDB_URL)
"""
