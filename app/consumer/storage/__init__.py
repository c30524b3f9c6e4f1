"""
Result store exports.
"""

from app.consumer.storage.base import ResultStore
from app.consumer.storage.sqlalchemy_storage import SQLAlchemyResultStore

__all__ = ["ResultStore", "SQLAlchemyResultStore"]
