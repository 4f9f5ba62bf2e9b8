"""Tag listing with Link header pagination."""

from typing import List, Optional
from urllib.parse import parse_qs, urlencode, urlparse
import json
import logging

import requests
from pydantic import BaseModel, ValidationError

from .errors import NetworkError
from .transport import raise_for_registry_status

logger = logging.getLogger(__name__)


class TagsChunk(BaseModel):
    """One page of GET /v2/<name>/tags/list."""

    name: str = ""
    tags: Optional[List[str]] = None  # some registries send null for no tags


def _parse_link(header: Optional[str]) -> Optional[str]:
    """Extract the next_page token from a Link header, if any."""
    if not header:
        return None
    for link in requests.utils.parse_header_links(header):
        if link.get("rel", "next") != "next":
            continue
        values = parse_qs(urlparse(link.get("url", "")).query).get("next_page")
        if values and values[0]:
            return values[0]
    return None


def list_tags(transport, name: str, paginate: Optional[int] = None) -> List[str]:
    """List all tags of a repository, following Link pagination.

    Args:
        transport: Registry transport
        name: Repository name (e.g. "library/alpine")
        paginate: Page size sent as ``n``; None lets the registry decide

    Raises:
        AuthError: On 401/403
        NotFoundError: On 404
        NetworkError: On 5xx or an unparsable page
        UnexpectedHttpStatusError: On any other non-2xx status
    """
    tags: List[str] = []
    token: Optional[str] = None

    while True:
        params = {}
        if paginate is not None:
            params["n"] = paginate
        if token:
            params["next_page"] = token
        url = transport.url(f"/v2/{name}/tags/list")
        if params:
            url = f"{url}?{urlencode(params)}"

        resp = transport.request("GET", url, headers={"Accept": "application/json"})
        raise_for_registry_status(resp, f"{name} tags")

        content_type = resp.headers.get("Content-Type", "")
        if not content_type.startswith("application/json"):
            logger.debug("Tags list for %s served as %r", name, content_type)

        try:
            chunk = TagsChunk.model_validate(json.loads(resp.content))
        except (ValueError, ValidationError) as e:
            raise NetworkError(f"Registry returned an invalid tags list for {name}: {e}")

        tags.extend(chunk.tags or [])
        token = _parse_link(resp.headers.get("Link"))
        if not token:
            return tags
        logger.debug("Following tags pagination for %s", name)
