"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create users table
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id VARCHAR(255) PRIMARY KEY,
            email VARCHAR(255) NOT NULL UNIQUE,
            evernote_token TEXT,
            evernote_note_store_url TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    # Create blogs table
    op.execute("""
        CREATE TABLE IF NOT EXISTS blogs (
            id UUID PRIMARY KEY,
            user_id VARCHAR(255) NOT NULL REFERENCES users(id),
            title VARCHAR(255) NOT NULL,
            slug VARCHAR(255) NOT NULL UNIQUE,
            external_notebook_id VARCHAR(255),
            notebook_name VARCHAR(255),
            last_synced_at TIMESTAMP,
            last_sync_attempt_at TIMESTAMP,
            last_sync_update_count INTEGER,
            sync_lease_until TIMESTAMP,
            created_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_blogs_user
        ON blogs(user_id)
    """)

    # Create posts table
    op.execute("""
        CREATE TABLE IF NOT EXISTS posts (
            id UUID PRIMARY KEY,
            blog_id UUID NOT NULL REFERENCES blogs(id),
            external_note_id VARCHAR(255),
            title TEXT NOT NULL,
            content TEXT NOT NULL DEFAULT '',
            excerpt TEXT,
            slug VARCHAR(255) NOT NULL,
            is_published BOOLEAN NOT NULL DEFAULT FALSE,
            published_at TIMESTAMP,
            content_source VARCHAR(20) NOT NULL DEFAULT 'EVERNOTE',
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_posts_blog_slug
        ON posts(blog_id, slug)
    """)

    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_posts_blog_external_note
        ON posts(blog_id, external_note_id)
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_posts_blog_published
        ON posts(blog_id, is_published)
    """)

    # Create post_images table
    op.execute("""
        CREATE TABLE IF NOT EXISTS post_images (
            id SERIAL PRIMARY KEY,
            post_id UUID NOT NULL REFERENCES posts(id),
            content_hash VARCHAR(64) NOT NULL,
            filename VARCHAR(255) NOT NULL,
            url TEXT NOT NULL,
            mime_type VARCHAR(100) NOT NULL,
            size INTEGER NOT NULL DEFAULT 0,
            exif_metadata TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_post_images_post_hash
        ON post_images(post_id, content_hash)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS post_images CASCADE")
    op.execute("DROP TABLE IF EXISTS posts CASCADE")
    op.execute("DROP TABLE IF EXISTS blogs CASCADE")
    op.execute("DROP TABLE IF EXISTS users CASCADE")
