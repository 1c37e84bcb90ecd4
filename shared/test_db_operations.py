"""Tests for database operations."""

import pytest
from datetime import datetime, timedelta
from uuid import uuid4

from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService


@pytest.fixture
def db_ops():
    """Create a test database operations instance with in-memory SQLite."""
    db = DatabaseOperations(database_url="sqlite:///:memory:")
    db.create_tables()
    return db


@pytest.fixture
def encryption_service():
    """Create an encryption service for testing."""
    return EncryptionService(encryption_key=EncryptionService.generate_key())


@pytest.fixture
def blog(db_ops):
    db_ops.create_user("user-1", "writer@example.com")
    return db_ops.create_blog("user-1", "My Blog", "my-blog", external_notebook_id="nb-1")


def make_post(db_ops, blog, external_note_id="note-1", slug="hello", is_published=True):
    return db_ops.create_post(
        post_id=uuid4(),
        blog_id=blog.id,
        external_note_id=external_note_id,
        slug=slug,
        title="Hello",
        content="<div>Hi</div>",
        excerpt="Hi",
        is_published=is_published,
        published_at=datetime(2024, 1, 1) if is_published else None
    )


def test_store_and_get_evernote_credentials(db_ops, encryption_service):
    """Tokens are stored encrypted and come back decrypted."""
    db_ops.create_user("user-1", "writer@example.com")

    db_ops.store_evernote_credentials("user-1", "S=s1:U=abc", "https://note.store", encryption_service)

    with db_ops.get_session() as session:
        from shared.db_models import User
        stored = session.get(User, "user-1").evernote_token
    assert stored != "S=s1:U=abc"

    credentials = db_ops.get_evernote_credentials("user-1", encryption_service)
    assert credentials == {
        'user_id': "user-1",
        'access_token': "S=s1:U=abc",
        'note_store_url': "https://note.store",
    }


def test_get_credentials_without_token(db_ops, encryption_service):
    db_ops.create_user("user-1", "writer@example.com")
    assert db_ops.get_evernote_credentials("user-1", encryption_service) is None
    assert db_ops.get_evernote_credentials("nobody", encryption_service) is None


def test_list_users_with_tokens(db_ops, encryption_service):
    db_ops.create_user("user-1", "one@example.com")
    db_ops.create_user("user-2", "two@example.com")
    db_ops.store_evernote_credentials("user-2", "token", None, encryption_service)

    assert db_ops.list_users_with_tokens() == ["user-2"]


def test_create_and_list_blogs(db_ops, blog):
    db_ops.create_blog("user-1", "Second", "second")

    blogs = db_ops.list_user_blogs("user-1")

    assert [b.title for b in blogs] == ["My Blog", "Second"]
    assert db_ops.get_blog(str(blog.id)).external_notebook_id == "nb-1"


def test_update_sync_state_only_writes_given_fields(db_ops, blog):
    synced_at = datetime(2024, 5, 1, 12, 0)
    db_ops.update_sync_state(blog.id, last_synced_at=synced_at, last_sync_update_count=7)

    db_ops.update_sync_state(blog.id, last_sync_attempt_at=datetime(2024, 5, 2))

    stored = db_ops.get_blog(blog.id)
    assert stored.last_synced_at == synced_at
    assert stored.last_sync_update_count == 7
    assert stored.last_sync_attempt_at == datetime(2024, 5, 2)


def test_update_sync_state_clears_with_none(db_ops, blog):
    db_ops.update_sync_state(blog.id, last_sync_attempt_at=datetime(2024, 5, 2))
    db_ops.update_sync_state(blog.id, last_sync_attempt_at=None)

    assert db_ops.get_blog(blog.id).last_sync_attempt_at is None


def test_update_sync_state_missing_blog(db_ops):
    assert db_ops.update_sync_state(uuid4(), last_synced_at=datetime.utcnow()) is None


def test_reset_sync_state(db_ops, blog):
    db_ops.update_sync_state(
        blog.id,
        last_synced_at=datetime(2024, 5, 1),
        last_sync_attempt_at=datetime(2024, 5, 2),
        last_sync_update_count=9
    )

    db_ops.reset_sync_state(blog.id)

    stored = db_ops.get_blog(blog.id)
    assert stored.last_synced_at is None
    assert stored.last_sync_attempt_at is None
    assert stored.last_sync_update_count is None


def test_sync_lease_is_exclusive_until_released(db_ops, blog):
    now = datetime(2024, 5, 1, 12, 0)
    until = now + timedelta(minutes=15)

    assert db_ops.acquire_sync_lease(blog.id, now, until) is True
    assert db_ops.acquire_sync_lease(blog.id, now, until) is False

    db_ops.release_sync_lease(blog.id)
    assert db_ops.acquire_sync_lease(blog.id, now, until) is True


def test_expired_sync_lease_can_be_taken_over(db_ops, blog):
    start = datetime(2024, 5, 1, 12, 0)
    db_ops.acquire_sync_lease(blog.id, start, start + timedelta(minutes=15))

    later = start + timedelta(minutes=20)
    assert db_ops.acquire_sync_lease(blog.id, later, later + timedelta(minutes=15)) is True


def test_update_notebook_name(db_ops, blog):
    db_ops.update_notebook_name(blog.id, "Travel Notes")
    assert db_ops.get_blog(blog.id).notebook_name == "Travel Notes"


def test_create_and_find_post(db_ops, blog):
    post = make_post(db_ops, blog)

    found = db_ops.find_post_by_external_id("note-1")

    assert found.id == post.id
    assert found.content_source == "EVERNOTE"
    by_external_id = db_ops.get_posts_by_external_ids(blog.id, ["note-1", "note-2"])
    assert list(by_external_id) == ["note-1"]
    assert by_external_id["note-1"].id == post.id
    assert db_ops.get_posts_by_external_ids(blog.id, []) == {}


def test_external_note_lookup_is_scoped_to_blog(db_ops, blog):
    other = db_ops.create_blog("user-1", "Other Blog", "other-blog", external_notebook_id="nb-1")
    post = make_post(db_ops, blog)
    other_post = make_post(db_ops, other)

    assert db_ops.get_posts_by_external_ids(blog.id, ["note-1"])["note-1"].id == post.id
    assert db_ops.get_posts_by_external_ids(other.id, ["note-1"])["note-1"].id == other_post.id
    assert db_ops.find_post_by_external_id("note-1", other.id).id == other_post.id


def test_update_post(db_ops, blog):
    post = make_post(db_ops, blog)

    db_ops.update_post(post.id, is_published=False, title="Renamed")

    stored = db_ops.get_post(post.id)
    assert stored.is_published is False
    assert stored.title == "Renamed"
    assert stored.published_at == datetime(2024, 1, 1)


def test_list_and_count_published_posts(db_ops, blog):
    make_post(db_ops, blog, "note-1", "one")
    make_post(db_ops, blog, "note-2", "two", is_published=False)

    assert [p.external_note_id for p in db_ops.list_published_posts(blog.id)] == ["note-1"]
    assert db_ops.count_posts(blog.id) == 2
    assert db_ops.count_posts(blog.id, is_published=True) == 1


def test_slug_exists(db_ops, blog):
    make_post(db_ops, blog, slug="hello")

    assert db_ops.slug_exists(blog.id, "hello")
    assert not db_ops.slug_exists(blog.id, "hello-2")


def test_post_image_upsert_and_delete(db_ops, blog):
    post = make_post(db_ops, blog)

    db_ops.add_post_image(post.id, "hash1", "a.png", "https://cdn/a.png", "image/png", 10)
    db_ops.add_post_image(post.id, "hash1", "b.png", "https://cdn/b.png", "image/png", 20)

    images = db_ops.list_post_images(post.id)
    assert len(images) == 1
    assert db_ops.find_post_image(post.id, "hash1").url == "https://cdn/b.png"

    assert db_ops.delete_post_image(images[0].id) is True
    assert db_ops.find_post_image(post.id, "hash1") is None
    assert db_ops.delete_post_image(images[0].id) is False


def test_post_image_keeps_exif_metadata(db_ops, blog):
    post = make_post(db_ops, blog)

    db_ops.add_post_image(
        post.id, "hash1", "a.jpg", "https://cdn/a.jpg", "image/jpeg", 10,
        exif_metadata='{"make": "Canon"}'
    )

    assert db_ops.find_post_image(post.id, "hash1").exif_metadata == '{"make": "Canon"}'


def test_delete_post_removes_images(db_ops, blog):
    post = make_post(db_ops, blog)
    db_ops.add_post_image(post.id, "hash1", "a.png", "https://cdn/a.png", "image/png", 10)

    assert db_ops.delete_post(post.id) is True

    assert db_ops.get_post(post.id) is None
    assert db_ops.list_post_images(post.id) == []
    assert db_ops.delete_post(post.id) is False
