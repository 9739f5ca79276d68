"""Structured record storage backends."""

from .mongodb_database import MongoDBDatabase
from .mysql_database import MySQLDatabase
from .postgres_database import PostgresDatabase
from .redis_database import RedisDatabase
from .sqlite_database import SQLiteDatabase

__all__ = [
    "SQLiteDatabase",
    "PostgresDatabase",
    "MySQLDatabase",
    "MongoDBDatabase",
    "RedisDatabase",
]
