"""Tests for shared data models."""

from datetime import datetime

from shared.models import (
    Note, PostOutcome, PostTransition, Resource, SyncResult, UserSyncResult
)


def make_payload(**overrides):
    payload = {
        "id": "note-1",
        "title": "Hello World",
        "content": "<en-note>Hi</en-note>",
        "tags": ["Published", "travel"],
        "created_at": "2024-01-01T10:00:00Z",
        "updated_at": 1704103200000,
        "resources": [
            {"id": "res-1", "content_hash": "ABC123", "mime_type": "image/png", "width": 10, "height": 20}
        ],
    }
    payload.update(overrides)
    return payload


def test_note_from_dict_parses_timestamps():
    note = Note.from_dict(make_payload())

    assert note.raw_content == "<en-note>Hi</en-note>"
    assert note.created_at == datetime(2024, 1, 1, 10, 0, 0)
    # Epoch milliseconds, as Evernote reports them
    assert note.updated_at == datetime(2024, 1, 1, 10, 0, 0)
    assert note.published_at is None
    assert note.resources[0] == Resource(
        id="res-1", content_hash="ABC123", mime_type="image/png", width=10, height=20
    )


def test_note_from_dict_converts_offsets_to_utc():
    note = Note.from_dict(make_payload(published_at="2024-03-01T12:00:00+02:00"))
    assert note.published_at == datetime(2024, 3, 1, 10, 0, 0)


def test_note_from_dict_defaults_missing_title():
    note = Note.from_dict(make_payload(title=""))
    assert note.title == "Untitled"


def test_has_tag_is_case_insensitive():
    note = Note.from_dict(make_payload())
    assert note.has_tag("published")
    assert note.has_tag("TRAVEL")
    assert not note.has_tag("draft")


def test_find_resource_matches_hash_case_insensitively():
    note = Note.from_dict(make_payload())
    assert note.find_resource("abc123").id == "res-1"
    assert note.find_resource("missing") is None


def test_post_outcome_for_republish_and_update():
    outcome = PostOutcome.for_transition(PostTransition.REPUBLISH_AND_UPDATE, "Post")

    assert outcome.to_dict() == {
        "title": "Post",
        "isNew": False,
        "isUpdated": False,
        "isUnpublished": False,
        "isRepublished": True,
        "isRepublishedUpdated": True,
    }


def test_post_outcome_omits_optional_flags():
    outcome = PostOutcome.for_transition(PostTransition.CREATE, "Post")

    assert outcome.to_dict() == {
        "title": "Post",
        "isNew": True,
        "isUpdated": False,
        "isUnpublished": False,
    }


def test_sync_result_record_counts_transitions():
    result = SyncResult(blog_id="b1", blog_title="Blog")

    result.record(PostTransition.CREATE, "A")
    result.record(PostTransition.CONTENT_UPDATE, "B")
    result.record(PostTransition.UNPUBLISH, "C")
    result.record(PostTransition.REPUBLISH, "D")
    result.record(PostTransition.REPUBLISH_AND_UPDATE, "E")
    result.record(PostTransition.NO_OP, "F")

    assert (
        result.new_posts, result.updated_posts, result.unpublished_posts,
        result.republished_posts, result.republished_updated_posts
    ) == (1, 1, 1, 1, 1)
    assert [p.title for p in result.posts] == ["A", "B", "C", "D", "E"]


def test_sync_result_to_dict_includes_error_only_when_failed():
    ok = SyncResult(blog_id="b1", blog_title="Blog").to_dict()
    assert "error" not in ok
    assert "errorCode" not in ok

    failed = SyncResult(
        blog_id="b1", blog_title="Blog", error="boom", error_code="sync_failed"
    ).to_dict()
    assert failed["error"] == "boom"
    assert failed["errorCode"] == "sync_failed"


def test_user_sync_result_sums_blog_results():
    first = SyncResult(blog_id="b1", blog_title="One", new_posts=2, updated_posts=1)
    second = SyncResult(
        blog_id="b2", blog_title="Two", new_posts=1, unpublished_posts=3,
        error="Slow down", error_code="rate_limited"
    )

    result = UserSyncResult(success=True, results=[first, second])

    assert result.total_new_posts == 3
    assert result.total_updated_posts == 1
    assert result.total_unpublished_posts == 3
    assert result.rate_limited is True
    data = result.to_dict()
    assert data["totalNewPosts"] == 3
    assert len(data["results"]) == 2
    assert "error" not in data
