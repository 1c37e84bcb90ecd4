"""Sync orchestration logic."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

import httpx
from sqlalchemy.exc import SQLAlchemyError

from shared.config import get_sync_config
from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.errors import SourceUnavailableError, SyncError
from shared.models import (
    SENTINEL_UNKNOWN, PostOutcome, SyncAction, SyncResult, UserSyncResult
)
from services.note_source.client import HttpNoteSource, NoteSource
from services.sync_service import change_detector
from services.sync_service.content_converter import ContentConverter
from services.sync_service.notifications import NotificationService
from services.sync_service.reconciler import ReconciliationEngine

logger = logging.getLogger(__name__)

NO_CHANGES_MESSAGE = "No changes detected in Evernote account since last successful sync"
SYNC_IN_PROGRESS_MESSAGE = "Sync already in progress"


class SyncOrchestrator:
    """Runs sync passes from an Evernote notebook into a blog."""

    def __init__(
        self,
        db_ops: DatabaseOperations,
        image_store,
        gateway_client: Optional[httpx.AsyncClient] = None,
        encryption_service: Optional[EncryptionService] = None,
        converter: Optional[ContentConverter] = None,
        notification_service: Optional[NotificationService] = None,
        sync_config: Optional[dict] = None,
        source_factory: Optional[Callable[[Dict], NoteSource]] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        """
        Initialize the sync orchestrator.

        Args:
            db_ops: Database operations instance
            image_store: Post image store
            gateway_client: HTTP client for the Evernote gateway
            encryption_service: Encryption service for stored tokens
            converter: ENML converter, built from image_store when omitted
            notification_service: Failure notifications
            sync_config: Overrides for get_sync_config()
            source_factory: Builds a NoteSource from decrypted credentials
            clock: Returns the current naive UTC time
        """
        self.db_ops = db_ops
        self.image_store = image_store
        self.gateway_client = gateway_client
        self.encryption_service = encryption_service
        self.config = sync_config or get_sync_config()
        self.converter = converter or ContentConverter(
            image_store, excerpt_length=self.config["excerpt_length"]
        )
        self.notification_service = notification_service or NotificationService()
        self.source_factory = source_factory or self._http_source
        self.clock = clock
        self.engine = ReconciliationEngine(
            db_ops,
            self.converter,
            image_store,
            publish_tag=self.config["publish_tag"],
            clock=clock
        )

    def _http_source(self, credentials: Dict) -> NoteSource:
        if self.gateway_client is None:
            raise SourceUnavailableError("Evernote gateway client is not configured")
        return HttpNoteSource(
            self.gateway_client,
            credentials["access_token"],
            credentials.get("note_store_url")
        )

    def _load_source(self, user_id: str) -> NoteSource:
        if self.encryption_service is None:
            raise SourceUnavailableError("Encryption service is not configured")
        credentials = self.db_ops.get_evernote_credentials(user_id, self.encryption_service)
        if not credentials or not credentials.get("access_token"):
            raise SourceUnavailableError("No Evernote token found")
        return self.source_factory(credentials)

    async def sync_blog(self, blog_id, source: Optional[NoteSource] = None) -> SyncResult:
        """
        Run one sync pass for a blog.

        Never raises for sync problems: failures come back as a SyncResult
        with ``error`` and ``error_code`` set. Only a successful pass advances
        the blog's success baseline.

        Args:
            blog_id: Blog to sync
            source: Note source to use, loaded from the owner's credentials if omitted

        Returns:
            SyncResult for this pass
        """
        blog = self.db_ops.get_blog(blog_id)
        if not blog:
            logger.error(f"Blog {blog_id} not found")
            return SyncResult(
                blog_id=str(blog_id), blog_title="", error="Blog not found", error_code="sync_failed"
            )

        result = SyncResult(blog_id=str(blog.id), blog_title=blog.title)

        if not blog.external_notebook_id:
            logger.warning(f"Blog {blog.id} has no Evernote notebook connected")
            result.error = "No Evernote notebook connected"
            result.error_code = "sync_failed"
            return result

        if source is None:
            try:
                source = self._load_source(blog.user_id)
            except SourceUnavailableError as e:
                logger.warning(f"Cannot sync blog {blog.id}: {e}")
                result.error = str(e)
                result.error_code = e.error_code
                return result

        now = self.clock()
        lease_until = now + timedelta(seconds=self.config["lease_seconds"])
        if not self.db_ops.acquire_sync_lease(blog.id, now, lease_until):
            logger.info(f"Sync for blog {blog.id} already in progress, skipping")
            result.error = SYNC_IN_PROGRESS_MESSAGE
            result.error_code = "sync_failed"
            return result

        try:
            await self._run_pass(blog, source, result)
        except Exception as e:
            logger.error(f"Sync failed for blog \"{blog.title}\" ({blog.id}): {e}", exc_info=True)
            result.error = str(e)
            result.error_code = e.error_code if isinstance(e, SyncError) else "sync_failed"
            self._record_failed_attempt(blog.id)
            await self.notification_service.send_sync_failure_notification(
                blog_id=str(blog.id),
                user_id=blog.user_id,
                error_message=result.error,
                context={"error_code": result.error_code}
            )
        finally:
            try:
                self.db_ops.release_sync_lease(blog.id)
            except SQLAlchemyError as e:
                logger.error(f"Failed to release sync lease for blog {blog.id}: {e}", exc_info=True)

        return result

    async def _run_pass(self, blog, source: NoteSource, result: SyncResult) -> None:
        counter = await source.get_account_change_counter()
        decision = change_detector.decide(blog, counter)
        logger.info(f"Blog \"{blog.title}\": {decision.action.value} ({decision.reason})")

        if decision.action == SyncAction.SKIP:
            result.posts.append(PostOutcome(title=NO_CHANGES_MESSAGE))
            result.total_published_posts = self.db_ops.count_posts(blog.id, is_published=True)
            # Baseline stays as is
            self._record_success(blog.id, SENTINEL_UNKNOWN)
            return

        if decision.clear_stale_baseline:
            try:
                self.db_ops.update_sync_state(blog.id, last_sync_update_count=None)
                logger.info(f"Cleared stale change counter baseline for blog {blog.id}")
            except SQLAlchemyError as e:
                logger.error(f"Failed to clear stale baseline for blog {blog.id}: {e}", exc_info=True)

        if decision.action == SyncAction.FULL:
            await self._refresh_notebook_name(blog, source)
            max_count = self.config["full_max_notes"]
        else:
            max_count = self.config["incremental_max_notes"]

        notes = await source.list_notebook_notes(
            blog.external_notebook_id,
            max_count,
            modified_since=decision.modified_since,
            tag=self.config["publish_tag"] if decision.action == SyncAction.FULL else None
        )
        result.notes_found = len(notes)

        existing = self.db_ops.get_posts_by_external_ids(
            blog.id, (note.id for note in notes)
        )
        mutations = await self.engine.reconcile(
            blog.id, notes, existing, source.get_resource_bytes
        )
        await self.engine.apply(blog.id, mutations, result)

        seen = await self._seen_note_ids(blog, source, decision.action, notes, max_count)
        await self.engine.apply(blog.id, self.engine.sweep(blog.id, seen), result)

        result.total_published_posts = self.db_ops.count_posts(blog.id, is_published=True)
        self._record_success(blog.id, counter)

        logger.info(
            f"Blog \"{blog.title}\" synced: {result.notes_found} notes, {result.new_posts} new, "
            f"{result.updated_posts} updated, {result.unpublished_posts} unpublished, "
            f"{result.republished_posts} republished, {result.republished_updated_posts} republished+updated"
        )

    async def _seen_note_ids(
        self,
        blog,
        source: NoteSource,
        action: SyncAction,
        notes: List,
        max_count: int
    ) -> Set[str]:
        # A partial fetch does not show every published note, so ask the
        # source for the full published id listing before sweeping
        seen = {note.id for note in notes}
        if action == SyncAction.INCREMENTAL or len(notes) >= max_count:
            published_ids = await source.list_published_note_ids(
                blog.external_notebook_id, self.config["publish_tag"]
            )
            seen.update(published_ids)
        return seen

    async def _refresh_notebook_name(self, blog, source: NoteSource) -> None:
        try:
            notebooks = await source.list_notebooks()
            for notebook in notebooks:
                if notebook.get("id") == blog.external_notebook_id:
                    name = notebook.get("name")
                    if name and name != blog.notebook_name:
                        self.db_ops.update_notebook_name(blog.id, name)
                        logger.info(f"Updated notebook name for blog {blog.id} to \"{name}\"")
                    break
        except (SyncError, SQLAlchemyError) as e:
            logger.warning(f"Could not refresh notebook name for blog {blog.id}: {e}")

    def _record_success(self, blog_id, counter: int) -> None:
        fields = {"last_synced_at": self.clock(), "last_sync_attempt_at": None}
        if counter != SENTINEL_UNKNOWN:
            fields["last_sync_update_count"] = counter
        try:
            self.db_ops.update_sync_state(blog_id, **fields)
        except SQLAlchemyError as e:
            logger.error(f"Failed to record successful sync for blog {blog_id}: {e}", exc_info=True)

    def _record_failed_attempt(self, blog_id) -> None:
        try:
            self.db_ops.update_sync_state(blog_id, last_sync_attempt_at=self.clock())
        except SQLAlchemyError as e:
            logger.error(f"Failed to record sync attempt for blog {blog_id}: {e}", exc_info=True)

    async def sync_user(self, user_id: str) -> UserSyncResult:
        """
        Sync every blog of a user that has a notebook connected.

        One blog failing never stops the others; its error is carried in
        that blog's SyncResult.
        """
        logger.info(f"Starting sync for user {user_id}")

        try:
            source = self._load_source(user_id)
        except SourceUnavailableError as e:
            logger.warning(f"Cannot sync user {user_id}: {e}")
            return UserSyncResult(success=False, error=str(e))

        results = []
        for blog in self.db_ops.list_user_blogs(user_id):
            if not blog.external_notebook_id:
                continue
            try:
                results.append(await self.sync_blog(blog.id, source=source))
            except Exception as e:
                logger.error(f"Unexpected error syncing blog {blog.id}: {e}", exc_info=True)
                results.append(SyncResult(
                    blog_id=str(blog.id),
                    blog_title=blog.title,
                    error=str(e),
                    error_code="sync_failed"
                ))

        user_result = UserSyncResult(success=True, results=results)
        logger.info(
            f"User {user_id} sync finished: {len(results)} blogs, "
            f"{user_result.total_new_posts} new, {user_result.total_updated_posts} updated, "
            f"{user_result.total_unpublished_posts} unpublished"
        )
        return user_result

    async def sync_all_users(self) -> List[UserSyncResult]:
        """Scheduled entry point: sync every user with an Evernote token."""
        user_ids = self.db_ops.list_users_with_tokens()
        logger.info(f"Scheduled sync for {len(user_ids)} users")

        results = []
        for user_id in user_ids:
            try:
                results.append(await self.sync_user(user_id))
            except Exception as e:
                logger.error(f"Sync failed for user {user_id}: {e}", exc_info=True)
        return results
