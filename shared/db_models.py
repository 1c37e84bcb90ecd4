"""SQLAlchemy database models for the FromCafe sync engine."""

from sqlalchemy import (
    Column, String, Integer, Boolean, Text, DateTime, ForeignKey, Index, TypeDecorator
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid


class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses
    CHAR(36), storing as stringified hex values.
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        else:
            return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, str):
            value = uuid.UUID(value)
        if dialect.name == 'postgresql':
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, str):
            return uuid.UUID(value)
        return value


Base = declarative_base()


class User(Base):
    """Model for users table. Only the columns sync needs."""
    __tablename__ = 'users'

    id = Column(String(255), primary_key=True)
    email = Column(String(255), nullable=False, unique=True)
    evernote_token = Column(Text, nullable=True)  # Encrypted
    evernote_note_store_url = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


class Blog(Base):
    """Model for blogs table."""
    __tablename__ = 'blogs'

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), ForeignKey('users.id'), nullable=False)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True)
    external_notebook_id = Column(String(255), nullable=True)
    notebook_name = Column(String(255), nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    last_sync_attempt_at = Column(DateTime, nullable=True)
    last_sync_update_count = Column(Integer, nullable=True)
    sync_lease_until = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        Index('idx_blogs_user', 'user_id'),
    )


class Post(Base):
    """Model for posts table."""
    __tablename__ = 'posts'

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    blog_id = Column(UUID(), ForeignKey('blogs.id'), nullable=False)
    external_note_id = Column(String(255), nullable=True)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False, default='')
    excerpt = Column(Text, nullable=True)
    slug = Column(String(255), nullable=False)
    is_published = Column(Boolean, nullable=False, default=False)
    published_at = Column(DateTime, nullable=True)
    content_source = Column(String(20), nullable=False, default='EVERNOTE')
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        Index('idx_posts_blog_slug', 'blog_id', 'slug', unique=True),
        Index('idx_posts_blog_external_note', 'blog_id', 'external_note_id', unique=True),
        Index('idx_posts_blog_published', 'blog_id', 'is_published'),
    )


class PostImage(Base):
    """Model for post_images table, one row per stored image."""
    __tablename__ = 'post_images'

    id = Column(Integer, primary_key=True, autoincrement=True)
    post_id = Column(UUID(), ForeignKey('posts.id'), nullable=False)
    content_hash = Column(String(64), nullable=False)
    filename = Column(String(255), nullable=False)
    url = Column(Text, nullable=False)
    mime_type = Column(String(100), nullable=False)
    size = Column(Integer, nullable=False, default=0)
    exif_metadata = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        Index('idx_post_images_post_hash', 'post_id', 'content_hash', unique=True),
    )
