"""
MARKET METADATA — Slugs and Gamma lookups for up/down markets
===============================================================

Polymarket names its crypto up/down markets deterministically, so the
slug for any window can be generated from the asset and start time:

  15m:    btc-updown-15m-1764211500            (event start, unix seconds)
  hourly: solana-up-or-down-november-27-2pm-et (event start, US/Eastern)

The backtester only uses this to VERIFY that a stored market window
really belongs to the strategy's asset: the price store doesn't record
which asset a market tracks.
"""

import json
import logging
from typing import Optional

import pandas as pd
import requests

import config
from backtest.models import MarketMetadata
from data.fetcher import make_session

logger = logging.getLogger(__name__)


def generate_slug(asset: str, timeframe: str, event_start_seconds: int) -> Optional[str]:
    """Slug of the up/down market for `asset` starting at `event_start_seconds`."""
    asset = str(asset or "").upper()
    if timeframe == "15m":
        pair = config.PAIR_SLUG_MAP.get(asset)
        if not pair:
            return None
        return f"{pair}-updown-15m-{int(event_start_seconds)}"

    if timeframe in ("1h", "hourly"):
        full_name = config.PAIR_FULL_NAME_MAP.get(asset)
        if not full_name:
            return None
        et = pd.Timestamp(int(event_start_seconds), unit="s", tz="UTC").tz_convert(config.MARKET_TIMEZONE)
        hour = et.hour % 12 or 12
        period = "am" if et.hour < 12 else "pm"
        return f"{full_name}-up-or-down-{et.month_name().lower()}-{et.day}-{hour}{period}-et"

    return None


def _as_list(raw) -> list:
    """Gamma returns some arrays JSON-encoded inside a string."""
    if isinstance(raw, list):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def _to_ms(raw) -> Optional[int]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, (int, float)):
        # Seconds vs milliseconds
        return int(raw if raw > 1e12 else raw * 1000)
    try:
        return int(pd.Timestamp(raw).value // 1_000_000)
    except ValueError:
        return None


def parse_market(payload: dict, slug: str = "", timeframe_minutes: int = 0) -> Optional[MarketMetadata]:
    """Map a Gamma market payload to MarketMetadata, Up/Down token order from `outcomes`."""
    token_ids = [str(t) for t in _as_list(payload.get("clobTokenIds"))]
    if len(token_ids) < 2:
        return None

    up_token, down_token = token_ids[0], token_ids[1]
    outcomes = [str(o).lower() for o in _as_list(payload.get("outcomes"))]
    if len(outcomes) >= 2:
        up_idx = next((i for i, o in enumerate(outcomes) if o in ("up", "yes")), None)
        down_idx = next((i for i, o in enumerate(outcomes) if o in ("down", "no")), None)
        if up_idx is not None and down_idx is not None \
                and max(up_idx, down_idx) < len(token_ids):
            up_token, down_token = token_ids[up_idx], token_ids[down_idx]

    event_start = _to_ms(payload.get("eventStartTime") or payload.get("eventStart"))
    if event_start is not None and timeframe_minutes:
        event_end = event_start + timeframe_minutes * 60_000
    else:
        event_end = _to_ms(payload.get("endDate") or payload.get("endTime"))

    return MarketMetadata(
        market_id=str(payload.get("id") or payload.get("slug") or slug),
        event_start=event_start,
        event_end=event_end,
        yes_token_id=up_token,
        no_token_id=down_token,
        slug=str(payload.get("slug") or slug),
    )


class GammaMarketResolver:
    """resolve_market_by_slug(slug) → MarketMetadata | None, never raises on HTTP errors."""

    def __init__(self, session: requests.Session = None, base_url: str = None):
        self.session = session or make_session()
        self.base_url = base_url or config.GAMMA_API

    def resolve_market_by_slug(self, slug: str, timeframe_minutes: int = 0) -> Optional[MarketMetadata]:
        try:
            resp = self.session.get(f"{self.base_url}/markets/slug/{slug}",
                                    timeout=config.HTTP_TIMEOUT)
            if resp.status_code == 404:
                logger.debug(f"[Gamma] No market for slug {slug}")
                return None
            resp.raise_for_status()
            payload = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"[Gamma] Lookup failed for {slug}: {e}")
            return None

        if isinstance(payload, list):
            payload = payload[0] if payload else {}
        return parse_market(payload, slug, timeframe_minutes)


def window_matches(window, metadata: Optional[MarketMetadata]) -> bool:
    """True when resolved metadata describes the same market as a stored window."""
    if metadata is None:
        return False
    if metadata.market_id == window.market_id:
        return True
    stored = {window.yes_token_id, window.no_token_id} - {""}
    return bool(stored & {metadata.yes_token_id, metadata.no_token_id})
