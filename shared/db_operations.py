"""Database operations for the FromCafe sync engine."""

from datetime import datetime
from typing import Dict, Iterable, List, Optional
from uuid import UUID
from sqlalchemy import create_engine, delete, select, update, or_, func as sql_func
from sqlalchemy.orm import Session, sessionmaker

from shared.db_models import Base, User, Blog, Post, PostImage
from shared.config import get_database_url

_UNSET = object()


class DatabaseOperations:
    """Handles all database operations for the sync engine."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or get_database_url()
        self.engine = create_engine(self.database_url, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def create_tables(self):
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    # User Operations

    def create_user(self, user_id: str, email: str) -> User:
        with self.get_session() as session:
            user = User(id=user_id, email=email)
            session.add(user)
            session.commit()
            return user

    def store_evernote_credentials(
        self,
        user_id: str,
        access_token: str,
        note_store_url: Optional[str],
        encryption_service: 'EncryptionService'
    ) -> Optional[User]:
        """
        Store the user's Evernote access token, encrypted.

        Args:
            user_id: The user ID
            access_token: Evernote OAuth access token (will be encrypted)
            note_store_url: Evernote note store URL for the account
            encryption_service: Encryption service for encrypting the token

        Returns:
            The updated User record or None if the user does not exist
        """
        with self.get_session() as session:
            user = session.get(User, user_id)
            if not user:
                return None

            user.evernote_token = encryption_service.encrypt(access_token)
            user.evernote_note_store_url = note_store_url
            session.commit()
            return user

    def get_evernote_credentials(
        self,
        user_id: str,
        encryption_service: 'EncryptionService'
    ) -> Optional[dict]:
        """
        Retrieve and decrypt the user's Evernote credentials.

        Returns:
            Dictionary with the decrypted token and note store URL, or None
            if the user has no token
        """
        with self.get_session() as session:
            user = session.get(User, user_id)

            if not user or not user.evernote_token:
                return None

            return {
                'user_id': user.id,
                'access_token': encryption_service.decrypt(user.evernote_token),
                'note_store_url': user.evernote_note_store_url,
            }

    def list_users_with_tokens(self) -> List[str]:
        """Return ids of every user with a connected Evernote account."""
        with self.get_session() as session:
            stmt = select(User.id).where(User.evernote_token.is_not(None))
            return list(session.execute(stmt).scalars().all())

    # Blog Operations

    def create_blog(
        self,
        user_id: str,
        title: str,
        slug: str,
        external_notebook_id: Optional[str] = None
    ) -> Blog:
        with self.get_session() as session:
            blog = Blog(
                user_id=user_id,
                title=title,
                slug=slug,
                external_notebook_id=external_notebook_id
            )
            session.add(blog)
            session.commit()
            session.refresh(blog)
            return blog

    def get_blog(self, blog_id) -> Optional[Blog]:
        with self.get_session() as session:
            return session.get(Blog, _as_uuid(blog_id))

    def list_user_blogs(self, user_id: str) -> List[Blog]:
        """
        Get all blogs owned by a user, oldest first.

        Args:
            user_id: The user ID

        Returns:
            List of Blog records
        """
        with self.get_session() as session:
            stmt = select(Blog).where(Blog.user_id == user_id).order_by(Blog.created_at.asc())
            return list(session.execute(stmt).scalars().all())

    def update_sync_state(
        self,
        blog_id,
        last_synced_at=_UNSET,
        last_sync_attempt_at=_UNSET,
        last_sync_update_count=_UNSET
    ) -> Optional[Blog]:
        """
        Update a blog's sync-state fields.

        Only the fields passed are written; pass None explicitly to clear one.

        Returns:
            The updated Blog record or None if not found
        """
        with self.get_session() as session:
            blog = session.get(Blog, _as_uuid(blog_id))

            if not blog:
                return None

            if last_synced_at is not _UNSET:
                blog.last_synced_at = last_synced_at
            if last_sync_attempt_at is not _UNSET:
                blog.last_sync_attempt_at = last_sync_attempt_at
            if last_sync_update_count is not _UNSET:
                blog.last_sync_update_count = last_sync_update_count

            session.commit()
            return blog

    def reset_sync_state(self, blog_id) -> Optional[Blog]:
        """Forget all sync history so the next pass is a full sync."""
        return self.update_sync_state(
            blog_id,
            last_synced_at=None,
            last_sync_attempt_at=None,
            last_sync_update_count=None
        )

    def update_notebook_name(self, blog_id, notebook_name: str) -> None:
        with self.get_session() as session:
            session.execute(
                update(Blog).where(Blog.id == _as_uuid(blog_id)).values(notebook_name=notebook_name)
            )
            session.commit()

    def acquire_sync_lease(self, blog_id, now: datetime, until: datetime) -> bool:
        """
        Take the per-blog sync lease if nobody else holds a live one.

        The conditional UPDATE makes this safe across processes.

        Returns:
            True if the lease was acquired
        """
        with self.get_session() as session:
            result = session.execute(
                update(Blog)
                .where(
                    Blog.id == _as_uuid(blog_id),
                    or_(Blog.sync_lease_until.is_(None), Blog.sync_lease_until < now)
                )
                .values(sync_lease_until=until)
            )
            session.commit()
            return result.rowcount == 1

    def release_sync_lease(self, blog_id) -> None:
        with self.get_session() as session:
            session.execute(
                update(Blog).where(Blog.id == _as_uuid(blog_id)).values(sync_lease_until=None)
            )
            session.commit()

    # Post Operations

    def get_post(self, post_id) -> Optional[Post]:
        with self.get_session() as session:
            return session.get(Post, _as_uuid(post_id))

    def find_post_by_external_id(self, external_note_id: str, blog_id=None) -> Optional[Post]:
        """
        Get the post backed by a given Evernote note.

        Args:
            external_note_id: The Evernote note GUID
            blog_id: Restrict to one blog; a note can back a post in each blog

        Returns:
            Post record or None if not found
        """
        with self.get_session() as session:
            stmt = select(Post).where(Post.external_note_id == external_note_id)
            if blog_id is not None:
                stmt = stmt.where(Post.blog_id == _as_uuid(blog_id))
            return session.execute(stmt.order_by(Post.created_at.asc())).scalars().first()

    def get_posts_by_external_ids(self, blog_id, external_note_ids: Iterable[str]) -> Dict[str, Post]:
        """Map each external note id that backs a post of this blog to the post."""
        ids = list(external_note_ids)
        if not ids:
            return {}
        with self.get_session() as session:
            stmt = select(Post).where(
                Post.blog_id == _as_uuid(blog_id),
                Post.external_note_id.in_(ids)
            )
            return {post.external_note_id: post for post in session.execute(stmt).scalars().all()}

    def create_post(
        self,
        post_id,
        blog_id,
        external_note_id: Optional[str],
        slug: str,
        title: str,
        content: str,
        excerpt: Optional[str],
        is_published: bool,
        published_at: Optional[datetime],
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        content_source: str = 'EVERNOTE'
    ) -> Post:
        """
        Create a new post.

        Returns:
            The created Post record
        """
        now = datetime.utcnow()
        with self.get_session() as session:
            post = Post(
                id=_as_uuid(post_id),
                blog_id=_as_uuid(blog_id),
                external_note_id=external_note_id,
                slug=slug,
                title=title,
                content=content,
                excerpt=excerpt,
                is_published=is_published,
                published_at=published_at,
                content_source=content_source,
                created_at=created_at or now,
                updated_at=updated_at or now
            )
            session.add(post)
            session.commit()
            return post

    def update_post(self, post_id, **fields) -> Optional[Post]:
        """
        Update columns on a post.

        Returns:
            The updated Post record or None if not found
        """
        with self.get_session() as session:
            post = session.get(Post, _as_uuid(post_id))

            if not post:
                return None

            for name, value in fields.items():
                setattr(post, name, value)

            session.commit()
            return post

    def delete_post(self, post_id) -> bool:
        """Delete a post together with its image records."""
        with self.get_session() as session:
            post = session.get(Post, _as_uuid(post_id))
            if not post:
                return False
            session.execute(delete(PostImage).where(PostImage.post_id == post.id))
            session.delete(post)
            session.commit()
            return True

    def list_published_posts(self, blog_id) -> List[Post]:
        with self.get_session() as session:
            stmt = select(Post).where(
                Post.blog_id == _as_uuid(blog_id),
                Post.is_published.is_(True)
            )
            return list(session.execute(stmt).scalars().all())

    def count_posts(self, blog_id, is_published: Optional[bool] = None) -> int:
        with self.get_session() as session:
            stmt = select(sql_func.count()).select_from(Post).where(Post.blog_id == _as_uuid(blog_id))
            if is_published is not None:
                stmt = stmt.where(Post.is_published.is_(is_published))
            return session.execute(stmt).scalar()

    def slug_exists(self, blog_id, slug: str) -> bool:
        with self.get_session() as session:
            stmt = select(Post.id).where(Post.blog_id == _as_uuid(blog_id), Post.slug == slug)
            return session.execute(stmt).first() is not None

    # Post Image Operations

    def find_post_image(self, post_id, content_hash: str) -> Optional[PostImage]:
        with self.get_session() as session:
            stmt = select(PostImage).where(
                PostImage.post_id == _as_uuid(post_id),
                PostImage.content_hash == content_hash
            )
            return session.execute(stmt).scalar_one_or_none()

    def add_post_image(
        self,
        post_id,
        content_hash: str,
        filename: str,
        url: str,
        mime_type: str,
        size: int,
        exif_metadata: Optional[str] = None
    ) -> PostImage:
        """Insert or replace the image record for (post_id, content_hash)."""
        with self.get_session() as session:
            stmt = select(PostImage).where(
                PostImage.post_id == _as_uuid(post_id),
                PostImage.content_hash == content_hash
            )
            image = session.execute(stmt).scalar_one_or_none()
            if image is None:
                image = PostImage(post_id=_as_uuid(post_id), content_hash=content_hash)
                session.add(image)
            image.filename = filename
            image.url = url
            image.mime_type = mime_type
            image.size = size
            image.exif_metadata = exif_metadata
            session.commit()
            return image

    def list_post_images(self, post_id) -> List[PostImage]:
        with self.get_session() as session:
            stmt = select(PostImage).where(PostImage.post_id == _as_uuid(post_id))
            return list(session.execute(stmt).scalars().all())

    def delete_post_image(self, image_id: int) -> bool:
        with self.get_session() as session:
            image = session.get(PostImage, image_id)
            if image:
                session.delete(image)
                session.commit()
                return True
            return False


def _as_uuid(value):
    if value is None or isinstance(value, UUID):
        return value
    return UUID(str(value))
