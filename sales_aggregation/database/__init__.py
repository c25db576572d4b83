"""
Database Module
"""
from .connection import init_database, close_database, get_db
from .models import Base, SalesAggregateRecord, SalesEventRecord
from .repositories import SqlAlchemyAggregateStore, SqlAlchemyEventSource, record_sales_event

__all__ = [
    "init_database",
    "close_database",
    "get_db",
    "Base",
    "SalesAggregateRecord",
    "SalesEventRecord",
    "SqlAlchemyAggregateStore",
    "SqlAlchemyEventSource",
    "record_sales_event",
]
