"""
Ecash Escrow SDK - Quote Watcher

Waits for a mint/melt quote to reach a target state. Uses the mint's
NUT-17 websocket (JSON-RPC subscribe/notify) when advertised and falls
back to polling on any websocket failure or when unsupported.

Subscribe:
    {"jsonrpc": "2.0", "id": 1, "method": "subscribe",
     "params": {"kind": "bolt11_mint_quote", "subId": "...", "filters": [quote_id]}}

Notification:
    {"jsonrpc": "2.0", "method": "subscribe",
     "params": {"subId": "...", "payload": {...quote...}}}
"""

import asyncio
import json
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator, List, Optional, Sequence, Set

import websockets

from .config import DEFAULT_QUOTE_TIMEOUT_S, POLL_DELAYS_S, POLL_STEADY_DELAY_S
from .errors import MintProtocolError, MintTransportError

log = logging.getLogger(__name__)

WS_CONNECT_TIMEOUT_S = 10


class SubscriptionKind(Enum):
    BOLT11_MINT_QUOTE = "bolt11_mint_quote"
    BOLT11_MELT_QUOTE = "bolt11_melt_quote"


class MintSubscription:
    """
    One NUT-17 subscription on its own websocket connection.

    Usage:
        async with MintSubscription(mint.ws_url, SubscriptionKind.BOLT11_MINT_QUOTE,
                                    [quote_id]) as sub:
            payload = await sub.next_payload()
    """

    def __init__(self, ws_url: str, kind: SubscriptionKind, filters: List[str]):
        self.ws_url = ws_url
        self.kind = kind
        self.filters = filters
        self.sub_id = uuid.uuid4().hex
        self._ws = None
        self._id = 0

    def _request(self, method: str, params: dict) -> str:
        self._id += 1
        return json.dumps({"jsonrpc": "2.0", "id": self._id, "method": method, "params": params})

    async def __aenter__(self) -> "MintSubscription":
        try:
            self._ws = await asyncio.wait_for(websockets.connect(self.ws_url),
                                              timeout=WS_CONNECT_TIMEOUT_S)
        except asyncio.TimeoutError:
            raise MintTransportError(f"websocket connect to {self.ws_url} timed out")
        await self._ws.send(self._request("subscribe", {
            "kind": self.kind.value,
            "subId": self.sub_id,
            "filters": self.filters,
        }))
        log.debug(f"Subscribed to {self.kind.value} ({len(self.filters)} filters), subId={self.sub_id}")
        return self

    async def __aexit__(self, *exc):
        if self._ws is None:
            return
        try:
            await self._ws.send(self._request("unsubscribe", {"subId": self.sub_id}))
        except (websockets.exceptions.WebSocketException, OSError) as e:
            log.debug(f"Unsubscribe failed for {self.sub_id}: {e}")
        await self._ws.close()

    async def next_payload(self) -> dict:
        """Block until the next notification for this subscription."""
        while True:
            raw = await self._ws.recv()
            try:
                msg = json.loads(raw)
            except ValueError:
                log.warning("Ignoring non-JSON websocket frame")
                continue
            if msg.get("error"):
                raise MintProtocolError(f"Subscription error: {msg['error']}")
            params = msg.get("params") or {}
            if msg.get("method") == "subscribe" and params.get("subId") == self.sub_id:
                return params.get("payload") or {}


def poll_schedule(delays: Optional[Sequence[float]] = None) -> Iterator[float]:
    """Initial back-off steps, then a steady interval forever."""
    for d in (POLL_DELAYS_S if delays is None else delays):
        yield d
    while True:
        yield POLL_STEADY_DELAY_S if delays is None else (delays[-1] if delays else 0)


async def _poll(check: Callable[[str], Awaitable[Any]], quote_id: str, targets: Set[str],
                deadline: float, delays: Optional[Sequence[float]]) -> Optional[Any]:
    loop = asyncio.get_running_loop()
    schedule = poll_schedule(delays)
    while True:
        try:
            quote = await check(quote_id)
            if quote.state.value in targets:
                return quote
        except MintTransportError as e:
            log.debug(f"Poll of {quote_id} failed, will retry: {e}")
        remaining = deadline - loop.time()
        if remaining <= 0:
            return None
        await asyncio.sleep(min(next(schedule), remaining))


async def _watch(ws_url: str, kind: SubscriptionKind, check: Callable[[str], Awaitable[Any]],
                 quote_id: str, targets: Set[str]) -> Any:
    async with MintSubscription(ws_url, kind, [quote_id]) as sub:
        # state may have changed before the subscription was live
        quote = await check(quote_id)
        if quote.state.value in targets:
            return quote
        while True:
            payload = await sub.next_payload()
            if payload.get("state") in targets:
                return await check(quote_id)


async def wait_for_quote_state(mint, kind: SubscriptionKind, quote_id: str,
                               targets: Set[str],
                               timeout: float = DEFAULT_QUOTE_TIMEOUT_S,
                               poll_delays: Optional[Sequence[float]] = None) -> Optional[Any]:
    """
    Wait until a quote's state is one of `targets`.

    Args:
        mint: MintClient (capabilities fetched beforehand enable websockets)
        kind: Quote subscription kind
        quote_id: Quote to watch
        targets: Accepted state strings, e.g. {"PAID", "ISSUED"}
        timeout: Overall bound in seconds
        poll_delays: Override of the polling back-off (tests)

    Returns:
        The quote in a target state, or None on timeout
    """
    if kind is SubscriptionKind.BOLT11_MINT_QUOTE:
        check = mint.check_mint_quote
    else:
        check = mint.check_melt_quote

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    caps = mint.capabilities
    if caps is not None and kind.value in caps.websocket_commands():
        try:
            return await asyncio.wait_for(_watch(mint.ws_url, kind, check, quote_id, targets),
                                          timeout=timeout)
        except asyncio.TimeoutError:
            log.info(f"Quote {quote_id} did not reach {sorted(targets)} within {timeout}s")
            return None
        except (websockets.exceptions.WebSocketException, OSError,
                MintProtocolError, MintTransportError) as e:
            log.warning(f"Websocket unavailable ({e}), falling back to polling")

    return await _poll(check, quote_id, targets, deadline, poll_delays)
