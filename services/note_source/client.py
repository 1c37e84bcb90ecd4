"""Client for the Evernote gateway service."""

import logging
import math
from datetime import datetime
from typing import Dict, List, Optional, Protocol

import httpx

from shared.errors import NoteSourceError, RateLimitError, SourceUnavailableError
from shared.models import Note, SENTINEL_UNKNOWN
from services.note_source.rate_limit import extract_retry_after, handle_rate_limit

logger = logging.getLogger(__name__)

EVERNOTE_RATE_LIMIT_REACHED = 19


class NoteSource(Protocol):
    """What the sync engine needs from a note source."""

    async def list_notebook_notes(
        self,
        notebook_id: str,
        max_count: int,
        modified_since: Optional[datetime] = None,
        tag: Optional[str] = None
    ) -> List[Note]: ...

    async def list_published_note_ids(self, notebook_id: str, tag: str) -> List[str]: ...

    async def get_resource_bytes(self, resource_id: str) -> bytes: ...

    async def get_account_change_counter(self) -> int: ...

    async def list_notebooks(self) -> List[Dict]: ...


class HttpNoteSource:
    """Talks to the Evernote gateway on behalf of one Evernote account."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        note_store_url: Optional[str] = None
    ):
        """
        Initialize the note source.

        Args:
            client: HTTP client whose base_url points at the Evernote gateway
            access_token: Decrypted Evernote access token for the account
            note_store_url: Account note store URL, saves the gateway a lookup
        """
        if not access_token:
            raise SourceUnavailableError("No Evernote token found")
        self.client = client
        self.access_token = access_token
        self.note_store_url = note_store_url

    def _headers(self) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        if self.note_store_url:
            headers["X-Note-Store-Url"] = self.note_store_url
        return headers

    async def _get(self, path: str, params: Optional[dict] = None) -> httpx.Response:
        try:
            response = await self.client.get(path, params=params, headers=self._headers())
        except httpx.HTTPError as e:
            raise NoteSourceError(f"Failed to reach Evernote gateway: {e}") from e

        self._raise_for_error(response)
        return response

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> None:
        if response.status_code == 429:
            raise _rate_limit_error(response)

        if response.status_code in (401, 403):
            raise SourceUnavailableError(
                f"Evernote rejected the access token (HTTP {response.status_code})"
            )

        if response.status_code >= 400:
            error_code = None
            try:
                body = response.json()
                if isinstance(body, dict):
                    error_code = body.get("errorCode")
            except ValueError:
                pass

            if error_code == EVERNOTE_RATE_LIMIT_REACHED:
                raise _rate_limit_error(response)

            raise NoteSourceError(
                f"Evernote gateway error (HTTP {response.status_code}): {response.text}"
            )

    @handle_rate_limit(max_retries=3, max_wait=60.0)
    async def list_notebook_notes(
        self,
        notebook_id: str,
        max_count: int,
        modified_since: Optional[datetime] = None,
        tag: Optional[str] = None
    ) -> List[Note]:
        """
        Fetch full notes from a notebook.

        Args:
            notebook_id: Evernote notebook GUID
            max_count: Maximum number of notes to return
            modified_since: Only notes updated after this time (incremental sync)
            tag: Only notes carrying this tag, filtered at the source

        Returns:
            List of Note objects
        """
        params = {"max_count": max_count}
        if modified_since:
            params["modified_since"] = modified_since.isoformat()
        if tag:
            params["tag"] = tag

        response = await self._get(f"/internal/evernote/notebooks/{notebook_id}/notes", params)
        notes = [Note.from_dict(item) for item in response.json().get("notes", [])]
        logger.info(f"Fetched {len(notes)} notes from notebook {notebook_id}")
        return notes

    @handle_rate_limit(max_retries=3, max_wait=60.0)
    async def list_published_note_ids(self, notebook_id: str, tag: str) -> List[str]:
        """Metadata-only listing of every note in the notebook carrying ``tag``."""
        response = await self._get(
            f"/internal/evernote/notebooks/{notebook_id}/note-ids",
            {"tag": tag}
        )
        return list(response.json().get("note_ids", []))

    @handle_rate_limit(max_retries=3, max_wait=60.0)
    async def get_resource_bytes(self, resource_id: str) -> bytes:
        response = await self._get(f"/internal/evernote/resources/{resource_id}")
        logger.info(f"Downloaded resource {resource_id} ({len(response.content)} bytes)")
        return response.content

    async def get_account_change_counter(self) -> int:
        """
        Get the account-wide update counter.

        Returns:
            The counter, or -1 when the gateway cannot tell us
        """
        try:
            response = await self._get("/internal/evernote/sync-state")
            return int(response.json()["update_count"])
        except (RateLimitError, SourceUnavailableError):
            raise
        except (NoteSourceError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Could not read Evernote sync state, assuming changes: {e}")
            return SENTINEL_UNKNOWN

    @handle_rate_limit(max_retries=3, max_wait=60.0)
    async def list_notebooks(self) -> List[Dict]:
        response = await self._get("/internal/evernote/notebooks")
        return list(response.json().get("notebooks", []))


def _rate_limit_error(response: httpx.Response) -> RateLimitError:
    retry_after = extract_retry_after(response)
    wait_minutes = max(1, math.ceil(retry_after / 60))
    return RateLimitError(
        f"Evernote API rate limit exceeded. Please wait {wait_minutes} minutes before syncing again.",
        retry_after=retry_after
    )
