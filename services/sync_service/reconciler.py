"""Reconcile fetched notes against persisted posts."""

import logging
import re
import uuid
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from shared.db_operations import DatabaseOperations
from shared.errors import RateLimitError
from shared.models import (
    Note, PostFields, PostMutation, PostOutcome, PostTransition, SyncResult
)
from services.sync_service.content_converter import ContentConverter, ResourceFetcher

logger = logging.getLogger(__name__)

EVERNOTE_SOURCE = 'EVERNOTE'


def classify_new(will_publish: bool) -> PostTransition:
    """A note with no post yet only becomes a post once it is published."""
    return PostTransition.CREATE if will_publish else PostTransition.NO_OP


def classify(
    was_published: bool,
    will_publish: bool,
    has_content_change: bool,
    has_publication_change: bool
) -> PostTransition:
    """
    Classify the change to an existing post.

    The three update flavours (content update, republish, republish and
    update) write the same fields; the split only matters for reporting.
    """
    if not has_content_change and not has_publication_change:
        return PostTransition.NO_OP
    if was_published and not will_publish:
        return PostTransition.UNPUBLISH
    if not was_published and will_publish:
        if has_content_change:
            return PostTransition.REPUBLISH_AND_UPDATE
        return PostTransition.REPUBLISH
    return PostTransition.CONTENT_UPDATE


def generate_slug(title: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', (title or '').lower()).strip('-')
    return slug[:100].rstrip('-') or 'post'


class ReconciliationEngine:
    """Plans and applies post mutations for one blog."""

    def __init__(
        self,
        db_ops: DatabaseOperations,
        converter: ContentConverter,
        image_store,
        publish_tag: str = 'published',
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.db_ops = db_ops
        self.converter = converter
        self.image_store = image_store
        self.publish_tag = publish_tag
        self.clock = clock

    async def reconcile(
        self,
        blog_id,
        notes: List[Note],
        existing_by_external_id: Dict[str, object],
        resource_fetcher: ResourceFetcher
    ) -> List[PostMutation]:
        """
        Plan one mutation per fetched note.

        A note that fails to convert yields a mutation carrying ``error``
        and the batch moves on. Rate limiting is not a per-note problem and
        aborts the pass.

        Args:
            blog_id: Blog the notes belong to
            notes: Notes fetched this pass
            existing_by_external_id: Existing posts keyed by external note id
            resource_fetcher: Coroutine returning resource bytes by id

        Returns:
            List of PostMutation, in note order
        """
        mutations = []
        reserved_slugs: Set[str] = set()

        for note in notes:
            try:
                mutation = await self._plan_note(
                    blog_id,
                    note,
                    existing_by_external_id.get(note.id),
                    resource_fetcher,
                    reserved_slugs
                )
            except RateLimitError:
                # Nothing from this batch gets applied
                for planned in mutations:
                    if planned.transition == PostTransition.CREATE:
                        await self._discard_post(planned.post_id)
                raise
            except Exception as e:
                logger.error(f"Failed to process note {note.id} (\"{note.title}\"): {e}", exc_info=True)
                mutation = PostMutation(
                    transition=PostTransition.NO_OP,
                    title=note.title,
                    external_note_id=note.id,
                    error=str(e)
                )
            mutations.append(mutation)

        return mutations

    async def _plan_note(
        self,
        blog_id,
        note: Note,
        existing,
        resource_fetcher: ResourceFetcher,
        reserved_slugs: Set[str]
    ) -> PostMutation:
        will_publish = note.has_tag(self.publish_tag)
        now = self.clock()

        if existing is None:
            transition = classify_new(will_publish)
            if transition == PostTransition.NO_OP:
                logger.debug(f"Note \"{note.title}\" is not published, skipping")
                return PostMutation(transition=transition, title=note.title, external_note_id=note.id)

            post_id = str(uuid.uuid4())
            slug = self._unique_slug(blog_id, generate_slug(note.title), reserved_slugs)
            # Image records reference the post, so the row has to exist
            # before any media is stored. It stays hidden until applied.
            self.db_ops.create_post(
                post_id=post_id,
                blog_id=blog_id,
                external_note_id=note.id,
                slug=slug,
                title=note.title,
                content='',
                excerpt=None,
                is_published=False,
                published_at=None,
                created_at=note.created_at,
                updated_at=note.updated_at,
                content_source=EVERNOTE_SOURCE
            )

            try:
                converted = await self.converter.convert(note.raw_content, note, post_id, resource_fetcher)
            except Exception:
                await self._discard_post(post_id)
                raise
            self._log_conversion(note, converted)

            return PostMutation(
                transition=transition,
                title=note.title,
                external_note_id=note.id,
                post_id=post_id,
                fields=PostFields(
                    title=note.title,
                    content=converted.html,
                    excerpt=converted.excerpt,
                    is_published=True,
                    published_at=note.published_at or now,
                    updated_at=note.updated_at
                ),
                slug=slug,
                created_at=note.created_at
            )

        if not will_publish:
            # Hidden posts keep their last content; only the flag changes
            transition = classify(
                existing.is_published, False, False, existing.is_published
            )
            return PostMutation(
                transition=transition,
                title=existing.title,
                external_note_id=note.id,
                post_id=str(existing.id),
                fields=PostFields(is_published=False, updated_at=now)
            )

        converted = await self.converter.convert(
            note.raw_content, note, str(existing.id), resource_fetcher
        )
        self._log_conversion(note, converted)

        # Keep the original publish time across unpublish/republish cycles
        published_at = note.published_at or existing.published_at or now

        title_changed = existing.title != note.title
        content_changed = existing.content != converted.html
        excerpt_changed = existing.excerpt != converted.excerpt
        has_content_change = title_changed or content_changed or excerpt_changed
        has_publication_change = (
            not existing.is_published or existing.published_at != published_at
        )

        transition = classify(
            existing.is_published, True, has_content_change, has_publication_change
        )

        if transition == PostTransition.NO_OP:
            logger.debug(f"Post \"{note.title}\" unchanged, skipping update")
        else:
            logger.info(
                f"Post \"{note.title}\": {transition.value} "
                f"(title={title_changed}, content={content_changed}, excerpt={excerpt_changed}, "
                f"publication={has_publication_change})"
            )

        return PostMutation(
            transition=transition,
            title=note.title,
            external_note_id=note.id,
            post_id=str(existing.id),
            fields=PostFields(
                title=note.title,
                content=converted.html,
                excerpt=converted.excerpt,
                is_published=True,
                published_at=published_at,
                updated_at=note.updated_at
            )
        )

    def sweep(self, blog_id, seen_note_ids: Iterable[str]) -> List[PostMutation]:
        """
        Plan unpublishing of published posts whose note was not seen.

        Covers both deleted notes and notes that lost the publish tag.
        ``seen_note_ids`` must cover every note that is still published,
        otherwise live posts get unpublished.
        """
        seen = set(seen_note_ids)
        now = self.clock()
        mutations = []

        for post in self.db_ops.list_published_posts(blog_id):
            if not post.external_note_id or post.content_source != EVERNOTE_SOURCE:
                continue
            if post.external_note_id in seen:
                continue

            logger.info(f"Note for post \"{post.title}\" ({post.external_note_id}) no longer published")
            mutations.append(PostMutation(
                transition=PostTransition.UNPUBLISH,
                title=post.title,
                external_note_id=post.external_note_id,
                post_id=str(post.id),
                fields=PostFields(is_published=False, updated_at=now)
            ))

        return mutations

    async def apply(self, blog_id, mutations: List[PostMutation], result: SyncResult) -> None:
        """
        Write planned mutations and record their outcomes on ``result``.

        A mutation that fails to persist is reported like a failed note.
        """
        for mutation in mutations:
            if mutation.error:
                result.posts.append(PostOutcome(title=mutation.title, error=mutation.error))
                continue
            if mutation.transition == PostTransition.NO_OP:
                continue

            try:
                self._write(mutation)
            except SQLAlchemyError as e:
                logger.error(f"Failed to save post \"{mutation.title}\": {e}", exc_info=True)
                if mutation.transition == PostTransition.CREATE:
                    await self._discard_post(mutation.post_id)
                result.posts.append(PostOutcome(title=mutation.title, error=str(e)))
                continue

            if mutation.transition == PostTransition.UNPUBLISH:
                await self._cleanup_images(mutation.post_id)

            result.record(mutation.transition, mutation.title)

    def _write(self, mutation: PostMutation) -> None:
        # New posts already have a hidden row from planning
        self.db_ops.update_post(mutation.post_id, **mutation.fields.as_update())

    async def _discard_post(self, post_id: str) -> None:
        await self._cleanup_images(post_id)
        try:
            self.db_ops.delete_post(post_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to remove unfinished post {post_id}: {e}", exc_info=True)

    async def _cleanup_images(self, post_id: Optional[str]) -> None:
        if not post_id:
            return
        try:
            await self.image_store.delete_post_images(post_id)
        except Exception as e:
            logger.error(f"Error cleaning up images for post {post_id}: {e}")

    def _unique_slug(self, blog_id, base: str, reserved: Set[str]) -> str:
        candidate = base
        suffix = 2
        while candidate in reserved or self.db_ops.slug_exists(blog_id, candidate):
            candidate = f"{base}-{suffix}"
            suffix += 1
        reserved.add(candidate)
        return candidate

    @staticmethod
    def _log_conversion(note: Note, converted) -> None:
        if converted.errors:
            logger.warning(f"Image processing errors for note \"{note.title}\": {converted.errors}")
        if converted.image_count:
            logger.info(f"Processed {converted.image_count} images for note \"{note.title}\"")
