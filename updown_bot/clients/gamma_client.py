"""
Gamma API client for Polymarket market metadata.
Discovers the hourly Up/Down markets by slug.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import aiohttp

from ..models import Market
from ..utils.logger import get_logger

logger = get_logger("gamma")

ET = ZoneInfo("America/New_York")

MONTH_NAMES = [
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
]

# Slug prefix -> ticker
ASSET_TICKERS = {
    "bitcoin": "BTC",
    "ethereum": "ETH",
    "solana": "SOL",
    "xrp": "XRP",
}

# Each hourly slot stays listed for this long after it opens
SLOT_LIFETIME = timedelta(hours=2)


def slot_label(hour: int) -> str:
    """24h hour -> slug label ("12am", "1pm", ...)."""
    suffix = "am" if hour < 12 else "pm"
    return f"{hour % 12 or 12}{suffix}"


def build_slug(asset: str, slot: datetime) -> str:
    month = MONTH_NAMES[slot.month - 1]
    return f"{asset}-up-or-down-{month}-{slot.day}-{slot_label(slot.hour)}-et"


def build_candidate_slugs(
    assets: list[str],
    max_market_age_hours: int,
    now: Optional[datetime] = None
) -> list[tuple[str, str]]:
    """
    Build (asset, slug) candidates for slots that may currently be open.

    Dates from two hours back to max_age+3 hours ahead (US Eastern) are
    scanned. Slots already past their lifetime or opening more than
    max_age+1 hours from now are skipped.

    Args:
        assets: Slug prefixes such as "bitcoin"
        max_market_age_hours: Look-ahead horizon
        now: Current time (defaults to now)

    Returns:
        Unique (asset, slug) pairs
    """
    now_et = (now or datetime.now(timezone.utc)).astimezone(ET)
    horizon = timedelta(hours=max_market_age_hours + 1)

    dates = sorted({
        (now_et + timedelta(hours=h)).date()
        for h in range(-2, max_market_age_hours + 4)
    })

    seen: set[str] = set()
    candidates = []

    for day in dates:
        for hour in range(24):
            slot = datetime(day.year, day.month, day.day, hour, tzinfo=ET)
            if slot + SLOT_LIFETIME < now_et:
                continue
            if slot - now_et > horizon:
                continue

            for asset in assets:
                slug = build_slug(asset, slot)
                if slug not in seen:
                    seen.add(slug)
                    candidates.append((asset, slug))

    return candidates


def _parse_list(raw) -> list:
    """Gamma sends some arrays as JSON-encoded strings."""
    if isinstance(raw, list):
        return raw
    if isinstance(raw, str) and raw.startswith("["):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return []
    return []


def extract_token_ids(data: dict) -> tuple[str, str]:
    """
    Get (up_token_id, down_token_id) from a Gamma market item.

    The structured tokens list is preferred; clobTokenIds is the
    fallback with index 0 as Up and index 1 as Down.
    """
    up_id = down_id = ""

    for token in _parse_list(data.get("tokens")):
        if not isinstance(token, dict):
            continue
        token_id = str(
            token.get("token_id") or token.get("tokenId") or token.get("clobTokenId") or ""
        )
        outcome = str(token.get("outcome", "")).lower()
        if outcome == "up":
            up_id = token_id
        elif outcome == "down":
            down_id = token_id

    if not (up_id and down_id):
        ids = [str(i) for i in _parse_list(data.get("clobTokenIds"))]
        if len(ids) >= 1 and not up_id:
            up_id = ids[0]
        if len(ids) >= 2 and not down_id:
            down_id = ids[1]

    return up_id, down_id


def parse_end_date(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        end_date = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if end_date.tzinfo is None:
        end_date = end_date.replace(tzinfo=timezone.utc)
    return end_date


def parse_market(asset: str, slug: str, data: dict) -> Optional[Market]:
    """Parse a Gamma market item. Returns None if it is not tradable."""
    condition_id = data.get("conditionId", "")
    if not condition_id:
        return None

    end_date = parse_end_date(data.get("endDate") or data.get("endDateIso") or "")
    if end_date is None:
        logger.debug(f"{slug}: missing or invalid end date")
        return None

    up_id, down_id = extract_token_ids(data)
    if not (up_id and down_id):
        logger.debug(f"{slug}: missing token ids")
        return None

    return Market(
        condition_id=condition_id,
        up_token_id=up_id,
        down_token_id=down_id,
        end_date=end_date,
        asset=ASSET_TICKERS.get(asset, asset.upper()),
        slug=slug,
        title=data.get("title") or data.get("question", "")
    )


class GammaClient:
    """
    Client for Polymarket Gamma API.

    The Gamma API provides market metadata without requiring
    authentication. Hourly Up/Down markets are found by probing
    predictable slugs.
    """

    BASE_URL = "https://gamma-api.polymarket.com"

    def __init__(
        self,
        assets: list[str],
        max_market_age_hours: int = 4,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        max_concurrency: int = 8
    ):
        """
        Initialize Gamma client.

        Args:
            assets: Slug prefixes to scan ("bitcoin", "ethereum", ...)
            max_market_age_hours: Only keep markets closing within this horizon
            base_url: Override for the Gamma endpoint
            timeout: Per-request timeout in seconds
            max_concurrency: Parallel slug lookups
        """
        self.assets = assets
        self.max_market_age_hours = max_market_age_hours
        self.base_url = base_url or self.BASE_URL
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> None:
        """Initialize HTTP session."""
        if not self._session:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        logger.info("Gamma client initialized")

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def _request(self, endpoint: str, params: Optional[dict] = None):
        """Make HTTP request to Gamma API."""
        if not self._session:
            await self.initialize()

        url = f"{self.base_url}{endpoint}"

        try:
            async with self._session.get(url, params=params) as response:
                response.raise_for_status()
                return await response.json()
        except aiohttp.ClientError as e:
            logger.error(f"Gamma API request failed: {e}")
            raise

    async def fetch_market(self, asset: str, slug: str) -> Optional[Market]:
        """
        Look up one market by slug.

        Returns:
            Market, or None if the slug does not exist yet
        """
        async with self._semaphore:
            data = await self._request("/markets", params={"slug": slug})

        if isinstance(data, dict):
            data = data.get("data", [])
        if not data:
            return None

        return parse_market(asset, slug, data[0])

    async def get_active_markets(self, now: Optional[datetime] = None) -> list[Market]:
        """
        Find open markets closing within the configured horizon.

        Lookup failures for individual slugs are logged and skipped.

        Returns:
            Markets sorted by time to close, soonest first
        """
        now = now or datetime.now(timezone.utc)
        candidates = build_candidate_slugs(self.assets, self.max_market_age_hours, now)
        logger.debug(f"Checking {len(candidates)} candidate slugs")

        results = await asyncio.gather(
            *(self.fetch_market(asset, slug) for asset, slug in candidates),
            return_exceptions=True
        )

        markets = []
        for (_, slug), result in zip(candidates, results):
            if isinstance(result, Exception):
                logger.warning(f"Market lookup failed for {slug}: {result}")
                continue
            if result and result.is_closing_within(self.max_market_age_hours, now):
                markets.append(result)

        markets.sort(key=lambda m: m.minutes_to_close(now))

        logger.info(
            f"Found {len(markets)} active markets (closing within {self.max_market_age_hours}h)",
            extra={"candidates": len(candidates)}
        )
        return markets
