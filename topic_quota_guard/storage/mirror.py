"""
Read-only mirror service client.

Fetches topic message feeds and account NFTs from the mirror REST API,
following ``links.next`` pagination until the full history is read.
"""

import base64
import binascii
import logging
from typing import Any, Dict, Iterator, List, Optional

import requests

from .models import UNKNOWN_GROUP_KEY, ChunkInfo, RawEntry
from .repository import UpstreamFetchFailure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


def entry_from_mirror(payload: Dict[str, Any], topic_id: Optional[str] = None) -> RawEntry:
    """Convert one mirror ``messages[]`` item into a RawEntry.

    Chunk metadata is copied as served; validation happens during
    reassembly so that a malformed item never aborts a whole fetch.
    """
    chunk_info = None
    raw_chunk = payload.get("chunk_info")
    if isinstance(raw_chunk, dict):
        initial = raw_chunk.get("initial_transaction_id") or {}
        group_key = UNKNOWN_GROUP_KEY
        if isinstance(initial, dict) and initial.get("transaction_valid_start"):
            group_key = str(initial["transaction_valid_start"])
        chunk_info = ChunkInfo(
            total=raw_chunk.get("total"),
            number=raw_chunk.get("number"),
            group_key=group_key,
        )

    return RawEntry(
        sequence_number=int(payload["sequence_number"]),
        consensus_timestamp=str(payload.get("consensus_timestamp", "")),
        message=payload.get("message") or "",
        chunk_info=chunk_info,
        topic_id=topic_id,
    )


class MirrorClient:
    """Thin wrapper around the mirror service REST surface."""

    def __init__(
        self,
        base_url: str,
        page_limit: int = 100,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """Initialize the client.

        Args:
            base_url: Mirror service root, e.g. https://testnet.mirrornode.hedera.com
            page_limit: Items requested per page
            session: Optional requests session (tests pass a stub)
            timeout: Per-request timeout in seconds
        """
        if page_limit <= 0:
            raise ValueError("page_limit must be > 0")
        self.base_url = base_url.rstrip("/")
        self.page_limit = page_limit
        self.timeout = timeout
        self._session = session or requests.Session()

    def get_topic_entries(self, topic_id: str) -> List[RawEntry]:
        """Fetch every message of a topic in ascending order.

        Raises:
            UpstreamFetchFailure: On transport errors, non-200 responses or bad JSON
        """
        url = f"{self.base_url}/api/v1/topics/{topic_id}/messages"
        params = {"limit": self.page_limit, "encoding": "base64", "order": "asc"}

        entries = []
        for page in self._paginate(url, params):
            for item in page.get("messages") or []:
                try:
                    entries.append(entry_from_mirror(item, topic_id))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping malformed mirror message on %s: %s", topic_id, e)

        logger.debug("Fetched %d entries for topic %s", len(entries), topic_id)
        return entries

    def get_account_nfts(self, account_id: str, token_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Fetch NFTs held by an account, optionally for one token."""
        url = f"{self.base_url}/api/v1/accounts/{account_id}/nfts"
        params: Dict[str, Any] = {"limit": self.page_limit}
        if token_id:
            params["token.id"] = token_id

        nfts: List[Dict[str, Any]] = []
        for page in self._paginate(url, params):
            nfts.extend(page.get("nfts") or [])
        return nfts

    def find_license_topic(self, account_id: str, token_id: str) -> Optional[str]:
        """Return the topic id linked from the account's first license NFT.

        License NFTs carry their topic id as base64 metadata. Returns None
        when the account holds no license or the metadata can't be decoded.
        """
        nfts = self.get_account_nfts(account_id, token_id)
        if not nfts:
            return None
        metadata = nfts[0].get("metadata") or ""
        try:
            topic_id = base64.b64decode(metadata, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            logger.warning("Invalid license metadata for %s: %s", account_id, e)
            return None
        if topic_id.count(".") != 2 or not all(p.isdigit() for p in topic_id.split(".")):
            logger.warning("License metadata for %s is not a topic id: %r", account_id, topic_id)
            return None
        return topic_id

    def _paginate(self, url: str, params: Optional[Dict[str, Any]]) -> Iterator[Dict[str, Any]]:
        next_url: Optional[str] = url
        while next_url:
            page = self._get_json(next_url, params)
            yield page
            # links.next already carries the query string
            params = None
            link = (page.get("links") or {}).get("next")
            next_url = f"{self.base_url}{link}" if link else None

    def _get_json(self, url: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        try:
            response = self._session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamFetchFailure(f"Mirror request failed: {e}") from e

        if response.status_code != 200:
            raise UpstreamFetchFailure(
                f"Mirror node error: {response.status_code}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamFetchFailure("Mirror node returned invalid JSON", status_code=200) from e
        if not isinstance(data, dict):
            raise UpstreamFetchFailure("Mirror node returned unexpected payload", status_code=200)
        return data
