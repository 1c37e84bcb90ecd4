"""Unit tests for post reconciliation."""

import pytest
from datetime import datetime
from unittest.mock import AsyncMock, Mock, patch
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from shared.db_operations import DatabaseOperations
from shared.errors import ImageStoreError, RateLimitError
from shared.models import Note, PostTransition, SyncResult
from services.sync_service.content_converter import ConversionResult
from services.sync_service.reconciler import (
    ReconciliationEngine, classify, classify_new, generate_slug
)


NOW = datetime(2024, 6, 1, 12, 0)
FIRST_PUBLISHED = datetime(2024, 1, 1, 9, 0)


@pytest.fixture
def db_ops():
    db = DatabaseOperations(database_url="sqlite:///:memory:")
    db.create_tables()
    return db


@pytest.fixture
def blog(db_ops):
    db_ops.create_user("user-1", "writer@example.com")
    return db_ops.create_blog("user-1", "My Blog", "my-blog", external_notebook_id="nb-1")


@pytest.fixture
def converter():
    converter = Mock()

    async def convert(raw_content, note, post_id, resource_fetcher):
        return ConversionResult(html=f"<div>{raw_content}</div>", excerpt=raw_content)

    converter.convert = AsyncMock(side_effect=convert)
    return converter


@pytest.fixture
def image_store():
    store = Mock()
    store.delete_post_images = AsyncMock()
    return store


@pytest.fixture
def engine(db_ops, converter, image_store):
    return ReconciliationEngine(db_ops, converter, image_store, clock=lambda: NOW)


@pytest.fixture
def fetcher():
    return AsyncMock(return_value=b"")


def make_note(note_id="note-1", title="Hello World", content="Hi", tags=("published",), published_at=None):
    return Note(
        id=note_id,
        title=title,
        raw_content=content,
        tags=list(tags),
        created_at=datetime(2024, 1, 1),
        updated_at=datetime(2024, 5, 1),
        published_at=published_at
    )


def make_post(db_ops, blog, note_id="note-1", title="Hello World", content="Hi",
              is_published=True, slug="hello-world", content_source="EVERNOTE"):
    return db_ops.create_post(
        post_id=uuid4(),
        blog_id=blog.id,
        external_note_id=note_id,
        slug=slug,
        title=title,
        content=f"<div>{content}</div>",
        excerpt=content,
        is_published=is_published,
        published_at=FIRST_PUBLISHED,
        content_source=content_source
    )


class TestClassify:
    """Tests for the transition classifier."""

    def test_new_notes(self):
        assert classify_new(True) == PostTransition.CREATE
        assert classify_new(False) == PostTransition.NO_OP

    def test_nothing_changed(self):
        assert classify(True, True, False, False) == PostTransition.NO_OP

    def test_content_update(self):
        assert classify(True, True, True, False) == PostTransition.CONTENT_UPDATE

    def test_unpublish(self):
        assert classify(True, False, False, True) == PostTransition.UNPUBLISH

    def test_republish(self):
        assert classify(False, True, False, True) == PostTransition.REPUBLISH

    def test_republish_and_update(self):
        assert classify(False, True, True, True) == PostTransition.REPUBLISH_AND_UPDATE

    def test_publish_date_change_on_live_post(self):
        assert classify(True, True, False, True) == PostTransition.CONTENT_UPDATE


class TestGenerateSlug:
    """Tests for slug generation."""

    def test_basic(self):
        assert generate_slug("Hello, World! 2024") == "hello-world-2024"

    def test_strips_edges(self):
        assert generate_slug("  --Trip to Kyoto--  ") == "trip-to-kyoto"

    def test_fallback(self):
        assert generate_slug("日本語") == "post"
        assert generate_slug("") == "post"


class TestReconcile:
    """Tests for ReconciliationEngine.reconcile/apply."""

    @pytest.mark.asyncio
    async def test_creates_published_note(self, engine, db_ops, blog, fetcher):
        mutations = await engine.reconcile(blog.id, [make_note()], {}, fetcher)

        assert [m.transition for m in mutations] == [PostTransition.CREATE]
        mutation = mutations[0]
        assert mutation.slug == "hello-world"
        assert mutation.fields.published_at == NOW
        assert mutation.created_at == datetime(2024, 1, 1)

        result = SyncResult(blog_id=str(blog.id), blog_title=blog.title)
        await engine.apply(blog.id, mutations, result)

        post = db_ops.find_post_by_external_id("note-1")
        assert str(post.id) == mutation.post_id
        assert post.is_published is True
        assert post.content == "<div>Hi</div>"
        assert post.updated_at == datetime(2024, 5, 1)
        assert result.new_posts == 1
        assert result.posts[0].is_new is True

    @pytest.mark.asyncio
    async def test_unpublished_new_note_is_ignored(self, engine, converter, blog, fetcher):
        mutations = await engine.reconcile(blog.id, [make_note(tags=())], {}, fetcher)

        assert mutations[0].transition == PostTransition.NO_OP
        converter.convert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_explicit_published_at_is_used(self, engine, blog, fetcher):
        note = make_note(published_at=datetime(2023, 12, 24))
        mutations = await engine.reconcile(blog.id, [note], {}, fetcher)

        assert mutations[0].fields.published_at == datetime(2023, 12, 24)

    @pytest.mark.asyncio
    async def test_slugs_are_unique_within_blog(self, engine, db_ops, blog, fetcher):
        make_post(db_ops, blog, note_id="other", slug="hello-world")
        notes = [make_note("note-1"), make_note("note-2")]

        mutations = await engine.reconcile(blog.id, notes, {}, fetcher)

        assert [m.slug for m in mutations] == ["hello-world-2", "hello-world-3"]

    @pytest.mark.asyncio
    async def test_unchanged_post_is_noop(self, engine, db_ops, blog, fetcher):
        post = make_post(db_ops, blog)

        mutations = await engine.reconcile(blog.id, [make_note()], {"note-1": post}, fetcher)

        assert mutations[0].transition == PostTransition.NO_OP

    @pytest.mark.asyncio
    async def test_changed_content_is_updated(self, engine, db_ops, blog, fetcher):
        post = make_post(db_ops, blog)
        result = SyncResult(blog_id=str(blog.id), blog_title=blog.title)

        mutations = await engine.reconcile(
            blog.id, [make_note(content="Edited")], {"note-1": post}, fetcher
        )
        await engine.apply(blog.id, mutations, result)

        assert mutations[0].transition == PostTransition.CONTENT_UPDATE
        stored = db_ops.get_post(post.id)
        assert stored.content == "<div>Edited</div>"
        assert stored.published_at == FIRST_PUBLISHED
        assert result.updated_posts == 1

    @pytest.mark.asyncio
    async def test_untagged_note_unpublishes_without_converting(
        self, engine, db_ops, converter, image_store, blog, fetcher
    ):
        post = make_post(db_ops, blog)
        result = SyncResult(blog_id=str(blog.id), blog_title=blog.title)

        mutations = await engine.reconcile(
            blog.id, [make_note(tags=(), content="Changed")], {"note-1": post}, fetcher
        )
        await engine.apply(blog.id, mutations, result)

        assert mutations[0].transition == PostTransition.UNPUBLISH
        converter.convert.assert_not_awaited()
        stored = db_ops.get_post(post.id)
        assert stored.is_published is False
        assert stored.published_at == FIRST_PUBLISHED
        assert stored.content == "<div>Hi</div>"
        image_store.delete_post_images.assert_awaited_once_with(str(post.id))
        assert result.unpublished_posts == 1

    @pytest.mark.asyncio
    async def test_untagged_note_for_hidden_post_is_noop(self, engine, db_ops, blog, fetcher):
        post = make_post(db_ops, blog, is_published=False)

        mutations = await engine.reconcile(blog.id, [make_note(tags=())], {"note-1": post}, fetcher)

        assert mutations[0].transition == PostTransition.NO_OP

    @pytest.mark.asyncio
    async def test_republish_keeps_original_publish_time(self, engine, db_ops, blog, fetcher):
        post = make_post(db_ops, blog, is_published=False)
        result = SyncResult(blog_id=str(blog.id), blog_title=blog.title)

        mutations = await engine.reconcile(blog.id, [make_note()], {"note-1": post}, fetcher)
        await engine.apply(blog.id, mutations, result)

        assert mutations[0].transition == PostTransition.REPUBLISH
        stored = db_ops.get_post(post.id)
        assert stored.is_published is True
        assert stored.published_at == FIRST_PUBLISHED
        assert result.republished_posts == 1
        assert result.posts[0].to_dict()["isRepublished"] is True

    @pytest.mark.asyncio
    async def test_republish_with_edits(self, engine, db_ops, blog, fetcher):
        post = make_post(db_ops, blog, is_published=False)
        result = SyncResult(blog_id=str(blog.id), blog_title=blog.title)

        mutations = await engine.reconcile(
            blog.id, [make_note(title="New Title")], {"note-1": post}, fetcher
        )
        await engine.apply(blog.id, mutations, result)

        assert mutations[0].transition == PostTransition.REPUBLISH_AND_UPDATE
        assert db_ops.get_post(post.id).title == "New Title"
        assert result.republished_updated_posts == 1

    @pytest.mark.asyncio
    async def test_note_failure_is_isolated(self, engine, db_ops, converter, blog, fetcher):
        async def convert(raw_content, note, post_id, resource_fetcher):
            if note.id == "note-2":
                raise ImageStoreError("S3 down")
            return ConversionResult(html=raw_content, excerpt=raw_content)

        converter.convert.side_effect = convert
        notes = [make_note("note-1", "One"), make_note("note-2", "Two"), make_note("note-3", "Three")]
        result = SyncResult(blog_id=str(blog.id), blog_title=blog.title)

        mutations = await engine.reconcile(blog.id, notes, {}, fetcher)
        await engine.apply(blog.id, mutations, result)

        assert result.new_posts == 2
        assert [(p.title, p.error) for p in result.posts] == [
            ("One", None), ("Two", "S3 down"), ("Three", None)
        ]
        assert db_ops.find_post_by_external_id("note-2", blog.id) is None

    @pytest.mark.asyncio
    async def test_rate_limit_aborts_batch(self, engine, db_ops, converter, blog, fetcher):
        async def convert(raw_content, note, post_id, resource_fetcher):
            if note.id == "note-2":
                raise RateLimitError("slow down", retry_after=900)
            return ConversionResult(html=raw_content, excerpt=raw_content)

        converter.convert.side_effect = convert

        with pytest.raises(RateLimitError):
            await engine.reconcile(blog.id, [make_note("note-1"), make_note("note-2")], {}, fetcher)

        assert db_ops.find_post_by_external_id("note-1", blog.id) is None
        assert db_ops.find_post_by_external_id("note-2", blog.id) is None

    @pytest.mark.asyncio
    async def test_new_post_row_exists_while_converting(self, engine, db_ops, converter, blog, fetcher):
        seen = {}

        async def convert(raw_content, note, post_id, resource_fetcher):
            seen["post"] = db_ops.get_post(post_id)
            return ConversionResult(html=raw_content, excerpt=raw_content)

        converter.convert.side_effect = convert

        mutations = await engine.reconcile(blog.id, [make_note()], {}, fetcher)

        assert str(seen["post"].id) == mutations[0].post_id
        assert seen["post"].is_published is False
        assert db_ops.count_posts(blog.id, is_published=True) == 0

    @pytest.mark.asyncio
    async def test_failed_create_write_removes_hidden_row(self, engine, db_ops, image_store, blog, fetcher):
        mutations = await engine.reconcile(blog.id, [make_note()], {}, fetcher)
        result = SyncResult(blog_id=str(blog.id), blog_title=blog.title)

        with patch.object(db_ops, "update_post", side_effect=SQLAlchemyError("disk full")):
            await engine.apply(blog.id, mutations, result)

        assert result.new_posts == 0
        assert result.posts[0].error == "disk full"
        assert db_ops.find_post_by_external_id("note-1", blog.id) is None
        image_store.delete_post_images.assert_awaited_once_with(mutations[0].post_id)


class TestSweep:
    """Tests for the unpublish sweep."""

    def test_unseen_published_posts_are_swept(self, engine, db_ops, blog):
        make_post(db_ops, blog, note_id="kept", slug="kept")
        gone = make_post(db_ops, blog, note_id="gone", slug="gone")
        make_post(db_ops, blog, note_id="hidden", slug="hidden", is_published=False)
        make_post(db_ops, blog, note_id="ghost", slug="ghost", content_source="GHOST")

        mutations = engine.sweep(blog.id, {"kept"})

        assert [(m.transition, m.post_id) for m in mutations] == [
            (PostTransition.UNPUBLISH, str(gone.id))
        ]
        assert mutations[0].fields.as_update() == {"is_published": False, "updated_at": NOW}

    @pytest.mark.asyncio
    async def test_applied_sweep_cleans_up_images(self, engine, db_ops, image_store, blog):
        gone = make_post(db_ops, blog, note_id="gone", slug="gone")
        result = SyncResult(blog_id=str(blog.id), blog_title=blog.title)

        await engine.apply(blog.id, engine.sweep(blog.id, set()), result)

        assert db_ops.get_post(gone.id).is_published is False
        assert db_ops.get_post(gone.id).published_at == FIRST_PUBLISHED
        image_store.delete_post_images.assert_awaited_once_with(str(gone.id))
        assert result.unpublished_posts == 1
