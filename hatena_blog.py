"""
hatena_blog.py: Hatena Blog AtomPub calls made with a linked credential.
"""

import logging
import xml.etree.ElementTree as ET
from typing import Any
from xml.sax.saxutils import escape

from hatena_oauth1 import HatenaOAuth1Client
from oauth_errors import HatenaOAuthError
from oauth_stores import HatenaCredential

logger = logging.getLogger("hatena-blog")

BLOG_HOST = "https://blog.hatena.ne.jp"
ATOM_NS = "http://www.w3.org/2005/Atom"
APP_NS = "http://www.w3.org/2007/app"

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def entry_feed_url(hatena_id: str, blog_id: str) -> str:
    return f"{BLOG_HOST}/{hatena_id}/{blog_id}/atom/entry"


def build_entry_xml(title: str, content: str, draft: bool | None = None) -> str:
    draft_tag = "<app:control><app:draft>yes</app:draft></app:control>" if draft else ""
    return f"""<?xml version="1.0" encoding="utf-8"?>
<entry xmlns="{ATOM_NS}" xmlns:app="{APP_NS}">
  <title>{escape(title, _XML_ENTITIES)}</title>
  <content type="text/plain">{escape(content, _XML_ENTITIES)}</content>
  {draft_tag}
</entry>"""


def parse_entries(feed_xml: str) -> list[dict[str, Any]]:
    try:
        root = ET.fromstring(feed_xml)
    except ET.ParseError as e:
        raise HatenaOAuthError("Invalid Atom feed", body=feed_xml) from e
    ns = {"atom": ATOM_NS, "app": APP_NS}
    entries = []
    for entry in root.findall("atom:entry", ns):
        entries.append({
            "id": entry.findtext("atom:id", default="", namespaces=ns),
            "title": entry.findtext("atom:title", default="", namespaces=ns),
            "updated": entry.findtext("atom:updated", default="", namespaces=ns),
            "draft": entry.findtext("app:control/app:draft", default="no", namespaces=ns) == "yes",
        })
    return entries


class HatenaBlogClient:
    def __init__(self, oauth1: HatenaOAuth1Client):
        self.oauth1 = oauth1

    async def _call(
        self,
        action: str,
        credential: HatenaCredential,
        method: str,
        url: str,
        body: str | None = None,
    ) -> str:
        headers = {"Content-Type": "application/xml"} if body is not None else None
        resp = await self.oauth1.signed_request(
            method, url,
            token=credential.access_token,
            token_secret=credential.access_secret,
            content=body.encode() if body is not None else None,
            headers=headers,
        )
        if not resp.is_success:
            raise HatenaOAuthError(
                f"Hatena {action} failed: {resp.status_code} {resp.text}",
                status=resp.status_code, body=resp.text,
            )
        return resp.text

    async def list_entries(
        self,
        credential: HatenaCredential,
        blog_id: str,
        limit: int | None = None,
        offset: int | None = None,
    ) -> dict[str, Any]:
        url = entry_feed_url(credential.hatena_id or "", blog_id)
        query = []
        if limit:
            query.append(f"max-results={limit}")
        if offset:
            query.append(f"start-index={offset + 1}")
        if query:
            url = f"{url}?{'&'.join(query)}"
        text = await self._call("list", credential, "GET", url)
        return {"raw": text, "entries": parse_entries(text)}

    async def create_entry(
        self,
        credential: HatenaCredential,
        blog_id: str,
        title: str,
        content: str,
        draft: bool | None = None,
    ) -> dict[str, str]:
        body = build_entry_xml(title, content, draft)
        url = entry_feed_url(credential.hatena_id or "", blog_id)
        return {"raw": await self._call("create", credential, "POST", url, body)}

    async def update_entry(
        self,
        credential: HatenaCredential,
        blog_id: str,
        entry_id: str,
        title: str | None = None,
        content: str | None = None,
        draft: bool | None = None,
    ) -> dict[str, str]:
        # AtomPub PUT replaces the entry, so omitted fields are sent empty.
        body = build_entry_xml(title or "", content or "", draft)
        url = f"{entry_feed_url(credential.hatena_id or '', blog_id)}/{entry_id}"
        return {"raw": await self._call("update", credential, "PUT", url, body)}
