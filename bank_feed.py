from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Iterator, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from config import Settings, get_settings
from errors import UpstreamFeedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedTransaction:
    external_id: str
    date: date
    amount: Decimal  # negative = money leaving the account
    name: Optional[str]
    merchant_name: Optional[str]
    pending: bool
    raw: dict = field(default_factory=dict, compare=False)

    @property
    def description(self) -> str:
        return self.name or self.merchant_name or "Unknown Transaction"


@dataclass(frozen=True)
class FeedPage:
    transactions: list[FeedTransaction]
    has_more: bool
    next_cursor: Optional[str]


def parse_feed_transaction(item: dict) -> FeedTransaction:
    try:
        return FeedTransaction(
            external_id=str(item["transaction_id"]),
            date=date.fromisoformat(str(item["date"])),
            amount=Decimal(str(item["amount"])),
            name=item.get("name") or None,
            merchant_name=item.get("merchant_name") or None,
            pending=bool(item.get("pending", False)),
            raw=item,
        )
    except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
        raise UpstreamFeedError("Malformed transaction in bank feed response") from exc


def parse_feed_page(payload: dict) -> FeedPage:
    items = payload.get("transactions")
    if items is None:
        items = []
    if not isinstance(items, list):
        raise UpstreamFeedError("Bank feed returned a non-list transactions field")
    return FeedPage(
        transactions=[parse_feed_transaction(item) for item in items],
        has_more=bool(payload.get("has_more", False)),
        next_cursor=payload.get("next_cursor") or None,
    )


class BankFeedClient:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def _post(self, path: str, body: dict) -> dict:
        payload = {
            "client_id": self.settings.feed_client_id,
            "secret": self.settings.feed_secret,
            **body,
        }
        req = Request(
            f"{self.settings.feed_base_url}{path}",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.settings.feed_timeout_secs) as resp:
                data = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            raise UpstreamFeedError(
                f"Bank feed returned HTTP {exc.code} for {path}"
            ) from exc
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise UpstreamFeedError(f"Failed to reach bank feed at {path}") from exc
        if not isinstance(data, dict):
            raise UpstreamFeedError(f"Unexpected bank feed response for {path}")
        return data

    def fetch_page(
        self,
        access_token: str,
        account_id: str,
        start: date,
        end: date,
        cursor: Optional[str] = None,
    ) -> FeedPage:
        body: dict[str, object] = {
            "access_token": access_token,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "account_ids": [account_id],
        }
        if cursor:
            body["cursor"] = cursor
        return parse_feed_page(self._post("/transactions/get", body))

    def iter_pages(
        self,
        access_token: str,
        account_id: str,
        start: date,
        end: date,
        *,
        max_records: Optional[int] = None,
    ) -> Iterator[FeedPage]:
        limit = max_records or self.settings.sync_max_records
        max_pages = self.settings.sync_max_pages
        fetched = 0
        seen_cursors: set[str] = set()
        cursor: Optional[str] = None
        for _ in range(max_pages):
            page = self.fetch_page(access_token, account_id, start, end, cursor)
            remaining = limit - fetched
            if len(page.transactions) >= remaining:
                if page.has_more or len(page.transactions) > remaining:
                    logger.warning(
                        f"bank_feed: record cap reached account={account_id} limit={limit}"
                    )
                yield FeedPage(page.transactions[:remaining], False, None)
                return
            fetched += len(page.transactions)
            yield page
            if not page.has_more:
                return
            if not page.next_cursor:
                raise UpstreamFeedError("Bank feed reported more pages without a cursor")
            if not page.transactions:
                raise UpstreamFeedError("Bank feed returned an empty page with more pages")
            if page.next_cursor in seen_cursors:
                raise UpstreamFeedError(
                    f"Bank feed repeated cursor {page.next_cursor!r}"
                )
            seen_cursors.add(page.next_cursor)
            cursor = page.next_cursor
        raise UpstreamFeedError(f"Bank feed exceeded {max_pages} pages for one sync")

    def exchange_public_token(self, public_token: str) -> tuple[str, str]:
        data = self._post("/item/public_token/exchange", {"public_token": public_token})
        try:
            return str(data["access_token"]), str(data["item_id"])
        except KeyError as exc:
            raise UpstreamFeedError("Token exchange response is missing fields") from exc

    def create_link_token(self, user_ref: str) -> str:
        data = self._post(
            "/link/token/create",
            {
                "user": {"client_user_id": user_ref},
                "client_name": self.settings.feed_client_name,
                "products": ["transactions"],
                "country_codes": ["US"],
                "language": "en",
            },
        )
        try:
            return str(data["link_token"])
        except KeyError as exc:
            raise UpstreamFeedError("Link token response is missing link_token") from exc
