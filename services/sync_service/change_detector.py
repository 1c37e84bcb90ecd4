"""Decide whether a blog needs a sync pass, and how much to fetch."""

import logging

from shared.models import SENTINEL_UNKNOWN, SyncAction, SyncDecision

logger = logging.getLogger(__name__)


def decide(blog, current_counter: int) -> SyncDecision:
    """
    Compare the account change counter against the blog's last successful pass.

    The counter is account-wide, not per notebook. Skipping is therefore only
    an optimization: if nothing in the account changed, this notebook did not
    either. A change elsewhere in the account just costs an extra pass.

    Args:
        blog: Object with last_synced_at, last_sync_attempt_at and
            last_sync_update_count attributes
        current_counter: Counter just read from the note source, -1 if unknown

    Returns:
        SyncDecision for this pass
    """
    baseline = blog.last_sync_update_count
    # A baseline only counts if it came from a pass that actually succeeded
    has_successful_sync = blog.last_synced_at is not None and baseline is not None
    counter_known = current_counter != SENTINEL_UNKNOWN

    if has_successful_sync and counter_known:
        if current_counter <= baseline:
            return SyncDecision(
                action=SyncAction.SKIP,
                reason=(
                    f"No account changes since last successful sync "
                    f"(current: {current_counter}, last successful: {baseline})"
                )
            )
        return SyncDecision(
            action=SyncAction.INCREMENTAL,
            reason=(
                f"Account changes detected since last successful sync "
                f"(current: {current_counter}, last successful: {baseline})"
            ),
            modified_since=blog.last_synced_at
        )

    if blog.last_sync_attempt_at is not None and blog.last_synced_at is None:
        return SyncDecision(
            action=SyncAction.FULL,
            reason="Previous sync attempts failed, forcing full sync",
            clear_stale_baseline=baseline is not None
        )

    if not counter_known:
        reason = "Account change counter unavailable, forcing full sync"
    else:
        reason = "First sync for this blog"
    return SyncDecision(action=SyncAction.FULL, reason=reason)
