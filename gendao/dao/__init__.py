"""
Data access objects for gendao.

GenericDAO is the contract domain code depends on; DocumentDAO and
RelationalDAO implement it over the two backends, and create_dao() picks
one from configuration.
"""

from .base import GenericDAO, create_dao
from .document import DocumentCounterStore, DocumentDAO
from .relational import RelationalCounterStore, RelationalDAO
from .validating import ValidatingDocumentDAO, ValidatingRelationalDAO

__all__ = [
    "DocumentCounterStore",
    "DocumentDAO",
    "GenericDAO",
    "RelationalCounterStore",
    "RelationalDAO",
    "ValidatingDocumentDAO",
    "ValidatingRelationalDAO",
    "create_dao",
]
