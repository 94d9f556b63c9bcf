"""
SQLAlchemy ORM models for database tables.

The document store keeps every node of the key-path tree as one row.
For the tree operations themselves, see storage.py.
"""

from sqlalchemy import Column, Integer, JSON, String

from wa_inbox.storage import Base


class Document(Base):
    """
    One document of the key-path tree.

    Table: documents
    Primary Key: path (slash-separated key path)
    parent indexes the children of a path for listing and range queries.
    version is bumped on every write and guards compare-and-set updates.
    """
    __tablename__ = "documents"

    path = Column(String, primary_key=True)
    parent = Column(String, nullable=False, index=True)  # path minus its last segment
    value = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(String, nullable=False)  # Server time ISO-8601
